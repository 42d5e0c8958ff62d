from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set


# ----------------------------- helpers -----------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def safe_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes, ISO-8601 strings (``Z`` suffix allowed) or epoch milliseconds."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp: {value!r}")


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _merge_partial(current: Any, partial: Mapping[str, Any], aliases: Mapping[str, str]) -> Dict[str, Any]:
    """Shallow-merge wire or snake_case keys onto a dataclass instance."""
    names = {f.name for f in fields(current)}
    updates: Dict[str, Any] = {}
    for key, value in (partial or {}).items():
        name = aliases.get(key, key)
        if name not in names:
            raise ValueError(f"unknown config field: {key}")
        updates[name] = value
    return updates


# ----------------------------- enums -----------------------------

class NodeStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"


class RecoveryStrategy(str, Enum):
    RESTART = "restart"
    FAILOVER = "failover"
    DEGRADED = "degraded"


class CompressionAlgorithm(str, Enum):
    GZIP = "gzip"
    LZ4 = "lz4"
    NONE = "none"


class TraceSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SimulationStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


# ----------------------------- hardware descriptors -----------------------------

@dataclass
class Device:
    """Accelerator attached to a node (GPU, NPU, ...)."""
    model: str
    memory_gb: float = 0.0
    utilization: float = 0.0     # percent
    temperature: float = 35.0    # Celsius
    compute_capability: Optional[float] = None
    tops: Optional[float] = None
    tensor_cores: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "model": self.model,
            "memory_gb": self.memory_gb,
            "utilization": self.utilization,
            "temperature": self.temperature,
        }
        for key in ("compute_capability", "tops", "tensor_cores"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Device":
        return cls(
            model=str(_pick(data, "model", "id", default="unknown")),
            memory_gb=safe_float(_pick(data, "memory_gb", "memory", default=0.0)),
            utilization=clamp(safe_float(data.get("utilization"), 0.0), 0.0, 100.0),
            temperature=safe_float(data.get("temperature"), 35.0),
            compute_capability=_pick(data, "compute_capability", "computeCapability"),
            tops=_pick(data, "tops"),
            tensor_cores=_pick(data, "tensor_cores", "tensorCores"),
        )


@dataclass
class NetworkDescriptor:
    address: str = ""
    role: str = ""
    bandwidth: float = 1000.0    # Mbps
    latency_ms: float = 1.0
    packet_loss_pct: float = 0.0
    last_update: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "role": self.role,
            "bandwidth": self.bandwidth,
            "latency_ms": self.latency_ms,
            "packet_loss_pct": self.packet_loss_pct,
            "last_update": format_timestamp(self.last_update),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NetworkDescriptor":
        last_update = _pick(data, "last_update", "lastUpdate")
        return cls(
            address=str(_pick(data, "address", "ip", default="")),
            role=str(data.get("role") or ""),
            bandwidth=safe_float(data.get("bandwidth"), 1000.0),
            latency_ms=safe_float(_pick(data, "latency_ms", "latency"), 1.0),
            packet_loss_pct=clamp(safe_float(_pick(data, "packet_loss_pct", "packetLoss"), 0.0), 0.0, 100.0),
            last_update=parse_timestamp(last_update) if last_update is not None else utc_now(),
        )


@dataclass
class DiskDescriptor:
    label: str = "--"
    size_gb: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "size_gb": self.size_gb}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DiskDescriptor":
        return cls(
            label=str(data.get("label") or "--"),
            size_gb=safe_float(_pick(data, "size_gb", "size"), 0.0),
        )


# ----------------------------- configs -----------------------------

_RECOVERY_ALIASES = {
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay_ms",
    "retryDelayMs": "retry_delay_ms",
    "failureThreshold": "failure_threshold",
    "recoveryStrategy": "strategy",
}

_COMPRESSION_ALIASES = {
    "threshold": "threshold_bytes",
    "thresholdBytes": "threshold_bytes",
}


@dataclass(frozen=True)
class RecoveryConfig:
    max_retries: int = 3
    retry_delay_ms: int = 5000
    failure_threshold: int = 3
    strategy: RecoveryStrategy = RecoveryStrategy.RESTART

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", RecoveryStrategy(self.strategy))
        object.__setattr__(self, "max_retries", int(self.max_retries))
        object.__setattr__(self, "retry_delay_ms", int(self.retry_delay_ms))
        object.__setattr__(self, "failure_threshold", int(self.failure_threshold))
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must be >= 0")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

    def merged(self, partial: Optional[Mapping[str, Any]]) -> "RecoveryConfig":
        return replace(self, **_merge_partial(self, partial or {}, _RECOVERY_ALIASES))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "failure_threshold": self.failure_threshold,
            "strategy": self.strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RecoveryConfig":
        return cls().merged(data)


@dataclass(frozen=True)
class CompressionConfig:
    """Carried as metadata only; nothing is ever compressed."""
    enabled: bool = False
    algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP
    level: int = 6
    threshold_bytes: int = 1024

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", CompressionAlgorithm(self.algorithm))
        object.__setattr__(self, "enabled", bool(self.enabled))
        object.__setattr__(self, "level", int(self.level))
        object.__setattr__(self, "threshold_bytes", int(self.threshold_bytes))

    def merged(self, partial: Optional[Mapping[str, Any]]) -> "CompressionConfig":
        return replace(self, **_merge_partial(self, partial or {}, _COMPRESSION_ALIASES))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "algorithm": self.algorithm.value,
            "level": self.level,
            "threshold_bytes": self.threshold_bytes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CompressionConfig":
        return cls().merged(data)


# ----------------------------- events -----------------------------

@dataclass(frozen=True)
class Trace:
    timestamp: datetime
    severity: TraceSeverity
    message: str
    origin: str
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "severity": self.severity.value,
            "message": self.message,
            "origin": self.origin,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Trace":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            severity=TraceSeverity(_pick(data, "severity", "type", default="info")),
            message=str(data.get("message", "")),
            origin=str(data.get("origin", "")),
            payload=_pick(data, "payload", "data"),
        )


@dataclass
class HeartbeatData:
    status: NodeStatus
    # None means "now" on the receiving node's clock.
    timestamp: Optional[datetime] = None
    devices: Optional[List[Device]] = None
    network: Optional[NetworkDescriptor] = None
    workload: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HeartbeatData":
        if "status" not in data:
            raise ValueError("heartbeat requires a status")
        devices = _pick(data, "devices", "gpus")
        network = data.get("network")
        workload = data.get("workload")
        ts = data.get("timestamp")
        return cls(
            status=NodeStatus(data["status"]),
            timestamp=parse_timestamp(ts) if ts is not None else None,
            devices=[Device.from_dict(d) for d in devices] if devices is not None else None,
            network=NetworkDescriptor.from_dict(network) if network is not None else None,
            workload=clamp(float(workload), 0.0, 100.0) if workload is not None else None,
        )


@dataclass(frozen=True)
class SensorReading:
    timestamp: datetime
    device_id: int
    phase: int
    values: Dict[str, float]
    is_anomaly: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "device_id": self.device_id,
            "phase": self.phase,
            "values": dict(self.values),
            "is_anomaly": self.is_anomaly,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SensorReading":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            device_id=int(_pick(data, "device_id", "plcId", default=0)),
            phase=int(data.get("phase", 0)),
            values={k: float(v) for k, v in (data.get("values") or {}).items()},
            is_anomaly=bool(_pick(data, "is_anomaly", "anomaly", default=False)),
        )


@dataclass
class DatasetIndexEntry:
    """Summary of one persisted sensor batch."""
    dataset_id: str
    start: Optional[datetime]
    end: Optional[datetime]
    device_ids: Set[int] = field(default_factory=set)
    anomaly_count: int = 0
    record_count: int = 0

    def overlaps(self, start: Optional[datetime], end: Optional[datetime]) -> bool:
        if self.start is None or self.end is None:
            return False
        if end is not None and self.start > end:
            return False
        if start is not None and self.end < start:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "time_range": {
                "start": format_timestamp(self.start) if self.start else None,
                "end": format_timestamp(self.end) if self.end else None,
            },
            "device_ids": sorted(self.device_ids),
            "anomaly_count": self.anomaly_count,
            "record_count": self.record_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DatasetIndexEntry":
        time_range = data.get("time_range") or {}
        start = time_range.get("start")
        end = time_range.get("end")
        return cls(
            dataset_id=str(data["dataset_id"]),
            start=parse_timestamp(start) if start else None,
            end=parse_timestamp(end) if end else None,
            device_ids={int(i) for i in data.get("device_ids", [])},
            anomaly_count=int(data.get("anomaly_count", 0)),
            record_count=int(data.get("record_count", 0)),
        )


@dataclass
class Simulation:
    name: str
    description: str = ""
    node_count: int = 0
    work_type: str = "generic"            # anomaly-detector | generic
    strategy: str = "statistical"         # statistical | machine-learning
    algorithm: str = "fixed-thresholds"
    data_directory: str = ""
    status: SimulationStatus = SimulationStatus.STOPPED
    last_update: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "node_count": self.node_count,
            "work_type": self.work_type,
            "strategy": self.strategy,
            "algorithm": self.algorithm,
            "data_directory": self.data_directory,
            "status": self.status.value,
            "last_update": format_timestamp(self.last_update),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Simulation":
        last_update = _pick(data, "last_update", "lastUpdate")
        return cls(
            name=str(data["name"]),
            description=str(data.get("description", "")),
            node_count=int(_pick(data, "node_count", "nodeCount", default=0)),
            work_type=str(_pick(data, "work_type", "workType", default="generic")),
            strategy=str(data.get("strategy", "statistical")),
            algorithm=str(data.get("algorithm", "fixed-thresholds")),
            data_directory=str(_pick(data, "data_directory", "dataDirectory", default="")),
            status=SimulationStatus(data.get("status", "stopped")),
            last_update=parse_timestamp(last_update) if last_update else utc_now(),
        )


def devices_to_dicts(devices: Iterable[Device]) -> List[Dict[str, Any]]:
    return [d.to_dict() for d in devices]
