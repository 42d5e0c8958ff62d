from datetime import datetime, timedelta, timezone

import pytest

from edgesim.config import Settings
from edgesim.errors import AlreadyExists, AlreadyRunning, NotConfigured, NotFound
from edgesim.manager import DEFAULT_EDGE_NODES, SimulationManager
from edgesim.messaging import MemoryPublisher
from edgesim.state import NodeStatus, SimulationStatus

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def sensor_publisher():
    return MemoryPublisher()


@pytest.fixture
def make_manager(tmp_path, scheduler, publisher, sensor_publisher):
    managers = []

    def _make(nodes_file=None, **overrides):
        settings = Settings(
            data_dir=str(tmp_path / "data"),
            nodes_file=str(nodes_file or tmp_path / "absent.yaml"),
            sensor_step_s=6,
            **overrides,
        )
        manager = SimulationManager(
            settings,
            scheduler=scheduler,
            publisher=publisher,
            sensor_publisher_factory=lambda: sensor_publisher,
            seed=7,
        )
        manager.initialize()
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown()


def test_default_edge_nodes_are_seeded(make_manager, tmp_path):
    manager = make_manager()
    names = [n.name for n in manager.nodes()]
    assert names == [n["name"] for n in DEFAULT_EDGE_NODES]
    assert manager.get_node("AGX Orin").devices[0].tops == 275
    assert manager.get_node("RPi 5").network.address == "192.168.1.99"
    assert (tmp_path / "data" / "nodes.json").exists()


def test_seed_file_is_used(make_manager, tmp_path):
    seeds = tmp_path / "nodes.yaml"
    seeds.write_text("nodes:\n  - name: edge-a\n    status: online\n  - name: edge-b\n", encoding="utf-8")
    manager = make_manager(nodes_file=seeds)
    assert [n.name for n in manager.nodes()] == ["edge-a", "edge-b"]
    assert manager.get_node("edge-b").stored_status is NodeStatus.OFFLINE


def test_nodes_persist_across_restarts(make_manager, tmp_path):
    first = make_manager()
    first.add_node("extra", devices=[{"model": "tpu", "utilization": 5}], status="online")
    first.remove_node("RPi 5")

    second = make_manager()
    names = [n.name for n in second.nodes()]
    assert "extra" in names
    assert "RPi 5" not in names
    with pytest.raises(AlreadyExists):
        second.add_node("extra")
    with pytest.raises(NotFound):
        second.remove_node("RPi 5")


def test_traces_are_appended_to_store(make_manager):
    manager = make_manager()
    manager.get_node("Orin Nano").handle_failure()
    traces = manager.store.load_traces("Orin Nano")
    assert traces[-1].message == "Node failure tolerated (1/3)"


def test_simulation_lifecycle(make_manager, scheduler):
    manager = make_manager()
    manager.add_simulation({"name": "plant", "description": "press line", "workType": "anomaly-detector"})
    with pytest.raises(AlreadyExists):
        manager.add_simulation({"name": "plant"})

    manager.start_simulation("plant")
    assert [s.name for s in manager.running_simulations()] == ["plant"]
    scheduler.advance(12)
    assert len(manager.simulation_telemetry("plant")) == 2

    manager.pause_simulation("plant")
    assert manager.get_simulation("plant").status is SimulationStatus.PAUSED
    manager.stop_simulation("plant")
    assert manager.running_simulations() == []

    assert manager.generate_simulation_history("plant", START, START + timedelta(seconds=30)) == 6

    manager.remove_simulation("plant")
    with pytest.raises(NotFound):
        manager.start_simulation("plant")


def test_running_simulations_reload_as_stopped(make_manager):
    first = make_manager()
    first.add_simulation({"name": "plant"})
    first.start_simulation("plant")

    second = make_manager()
    assert second.get_simulation("plant").status is SimulationStatus.STOPPED


def test_historical_sensor_session(make_manager):
    manager = make_manager()
    entry = manager.start_historical_sensors(1, 0.4, START, START + timedelta(minutes=1), dataset_id="minute")

    assert entry.dataset_id == "minute"
    assert entry.record_count == 10
    assert manager.sensors is None
    assert len(manager.query_dataset(device_id=0)) == 10
    assert manager.query_dataset(start=START + timedelta(seconds=50)) == manager.query_dataset()[-1:]


def test_realtime_sensor_session(make_manager, scheduler, sensor_publisher):
    manager = make_manager(sensor_tick_s=30)
    manager.start_realtime_sensors(2, 0.0)

    with pytest.raises(AlreadyRunning):
        manager.start_realtime_sensors(1, 0.0)
    with pytest.raises(AlreadyRunning):
        manager.start_historical_sensors(1, 0.0, START, START + timedelta(minutes=1))

    scheduler.advance(30)
    assert len(sensor_publisher.messages()) == 2

    manager.stop_sensors()
    with pytest.raises(NotFound):
        manager.stop_sensors()


def test_realtime_without_publish_url_is_not_configured(tmp_path, scheduler):
    manager = SimulationManager(
        Settings(data_dir=str(tmp_path / "d"), nodes_file=str(tmp_path / "none.yaml")),
        scheduler=scheduler,
    )
    with pytest.raises(NotConfigured):
        manager.start_realtime_sensors(1, 0.1)
    assert manager.sensors is None


def test_cluster_configuration(make_manager):
    manager = make_manager()
    manager.set_recovery_config({"failureThreshold": 1, "recoveryStrategy": "degraded"})
    manager.set_compression_config({"enabled": True, "level": 9})
    manager.set_load_balancing_strategy("temperature-aware")

    for node in manager.nodes():
        assert node.recovery_config.failure_threshold == 1
        assert node.compression_config.level == 9
    with pytest.raises(ValueError):
        manager.set_recovery_config({"bogus": 1})
    with pytest.raises(ValueError):
        manager.set_load_balancing_strategy("fastest")


def test_cluster_loop(make_manager, scheduler, publisher):
    manager = make_manager(cluster_loop_interval_s=5)
    manager.start_cluster_loop()
    manager.start_cluster_loop()

    scheduler.advance(5)
    assert manager.get_node("AGX Orin").workload > 0
    assert len(publisher.payloads("iot-cluster/AGX Orin/status")) == 1

    status = manager.cluster_status()
    assert status["active_nodes"] == 5
    assert status["total_devices"] == 4
    node, _ = manager.get_optimal_device()
    assert node.name != "RPi 5"

    manager.stop_cluster_loop()
    scheduler.advance(50)
    assert len(publisher.payloads("iot-cluster/AGX Orin/status")) == 1
    # no heartbeats for 55s: every node has aged out
    assert manager.cluster_status()["active_nodes"] == 0
    assert manager.get_optimal_device() is None


def test_node_state_survives_restart(make_manager):
    first = make_manager()
    first.set_recovery_config({"strategy": "failover", "failure_threshold": 5})
    first.set_compression_config({"enabled": True})
    first.get_node("Orin Nano").handle_failure()
    first.shutdown()

    second = make_manager()
    node = second.get_node("Orin Nano")
    assert node.recovery_config.failure_threshold == 5
    assert node.recovery_config.strategy.value == "failover"
    assert node.compression_config.enabled is True
    assert node.failure_count == 1
    assert [t.message for t in node.traces()] == [
        "Recovery configuration updated",
        "Compression configuration updated",
        "Node failure tolerated (1/5)",
    ]
    assert "traces" not in second.store.load_nodes()[0]


def test_config_change_is_saved_without_shutdown(make_manager):
    first = make_manager()
    first.set_recovery_config({"failure_threshold": 2})

    second = make_manager()
    assert second.get_node("AGX Orin").recovery_config.failure_threshold == 2


def test_cleared_and_removed_trace_logs_stay_gone(make_manager):
    first = make_manager()
    first.get_node("AGX Orin").handle_failure()
    first.get_node("Orin Nano").handle_failure()
    first.clear_node_traces("AGX Orin")
    first.remove_node("Orin Nano")
    first.add_node("Orin Nano", status="online")

    second = make_manager()
    assert second.get_node("AGX Orin").traces() == []
    assert second.get_node("Orin Nano").traces() == []


def test_open_ended_historical_session_bounded_by_max_records(make_manager):
    manager = make_manager()
    entry = manager.start_historical_sensors(2, 0.0, START, max_records=6)

    assert entry.dataset_id == "historical_20240101T000000Z"
    assert entry.record_count == 6
    assert entry.end == START + timedelta(seconds=12)
    assert manager.sensors is None
