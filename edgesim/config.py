"""Runtime settings, loaded from an optional YAML file with EDGESIM_* env overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "EDGESIM_"


@dataclass
class Settings:
    data_dir: str = "data"
    nodes_file: str = "deploy/nodes.yaml"
    liveness_window_s: float = 30.0
    sensor_step_s: float = 30.0
    sensor_tick_s: float = 30.0
    telemetry_interval_s: float = 6.0
    cluster_loop_interval_s: float = 5.0
    load_balancing_strategy: str = "least-loaded"
    publish_url: Optional[str] = None
    topic_prefix: str = "iot-cluster"
    log_level: str = "INFO"


def _coerce(raw: Any, current: Any) -> Any:
    if raw is None:
        return None
    if isinstance(current, bool):
        return str(raw).lower() in ("1", "true", "yes", "on")
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, int):
        return int(raw)
    return str(raw)


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Build settings from defaults, then the YAML file, then environment variables."""
    settings = Settings()
    known = {f.name: f for f in fields(Settings)}
    env = os.environ if env is None else env

    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Settings file {path} not found, using defaults")
            data = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting '{key}' in {path}")
                continue
            setattr(settings, key, _coerce(value, getattr(settings, key)))

    for name in known:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            setattr(settings, name, _coerce(raw, getattr(settings, name)))

    return settings


def load_node_seeds(path: str) -> List[Dict[str, Any]]:
    """Read the seed node list (``nodes:`` key or a bare list) from YAML."""
    p = Path(path)
    if not p.exists():
        return []
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("nodes", [])
    if not isinstance(data, list):
        logger.warning(f"Seed file {path} has no node list")
        return []
    return [item for item in data if isinstance(item, dict) and item.get("name")]


_configured = False


def configure_logging(level: str = "INFO") -> None:
    global _configured
    if _configured:
        logging.getLogger().setLevel(level.upper())
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _configured = True
