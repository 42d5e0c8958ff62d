import logging

from edgesim.config import Settings, load_node_seeds, load_settings


def test_defaults():
    settings = load_settings(None, env={})
    assert settings == Settings()
    assert settings.liveness_window_s == 30.0
    assert settings.topic_prefix == "iot-cluster"
    assert settings.publish_url is None


def test_yaml_then_env_overrides(tmp_path, caplog):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "data_dir: /var/lib/edgesim\n"
        "sensor_step_s: 6\n"
        "load_balancing_strategy: round-robin\n"
        "colour: blue\n",
        encoding="utf-8",
    )
    env = {"EDGESIM_SENSOR_STEP_S": "12", "EDGESIM_PUBLISH_URL": "http://broker:8080", "OTHER": "x"}

    with caplog.at_level(logging.WARNING):
        settings = load_settings(str(path), env=env)

    assert settings.data_dir == "/var/lib/edgesim"
    assert settings.sensor_step_s == 12.0
    assert settings.load_balancing_strategy == "round-robin"
    assert settings.publish_url == "http://broker:8080"
    assert "colour" in caplog.text


def test_missing_settings_file_uses_defaults(tmp_path):
    assert load_settings(str(tmp_path / "nope.yaml"), env={}) == Settings()


def test_load_node_seeds(tmp_path):
    path = tmp_path / "nodes.yaml"
    path.write_text(
        "nodes:\n"
        "  - name: edge-1\n"
        "    devices:\n"
        "      - {model: orin, utilization: 12}\n"
        "  - {status: online}\n",
        encoding="utf-8",
    )
    seeds = load_node_seeds(str(path))
    assert [s["name"] for s in seeds] == ["edge-1"]
    assert load_node_seeds(str(tmp_path / "missing.yaml")) == []
