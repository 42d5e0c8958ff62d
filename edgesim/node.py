"""Simulated cluster node: heartbeats, liveness, load, traces and recovery."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from edgesim.failures.recovery import RecoveryStateMachine
from edgesim.messaging import NullPublisher, Publisher
from edgesim.policy.balancer import LoadBalancingStrategy, select_device
from edgesim.scheduler import Scheduler, ThreadScheduler
from edgesim.state import (
    CompressionConfig,
    Device,
    DiskDescriptor,
    HeartbeatData,
    NetworkDescriptor,
    NodeStatus,
    RecoveryConfig,
    Trace,
    TraceSeverity,
    clamp,
    devices_to_dicts,
    format_timestamp,
    parse_timestamp,
    safe_float,
)

logger = logging.getLogger(__name__)

DEFAULT_LIVENESS_WINDOW_S = 30.0

TraceListener = Callable[[Trace], None]


class ClusterNode:
    """
    One simulated cluster member.

    The node exclusively owns its device list, descriptors, configs and trace
    log. Every mutation happens under a per-node re-entrant lock so heartbeat
    handling, scheduled restarts and the periodic load tick can run from
    different threads.
    """

    def __init__(
        self,
        name: str,
        *,
        devices: Optional[List[Device]] = None,
        network: Optional[NetworkDescriptor] = None,
        disk: Optional[DiskDescriptor] = None,
        status: NodeStatus = NodeStatus.OFFLINE,
        workload: float = 0.0,
        last_heartbeat: Optional[datetime] = None,
        recovery: Optional[RecoveryConfig] = None,
        compression: Optional[CompressionConfig] = None,
        scheduler: Optional[Scheduler] = None,
        publisher: Optional[Publisher] = None,
        liveness_window_s: float = DEFAULT_LIVENESS_WINDOW_S,
        rng: Optional[random.Random] = None,
        topic_prefix: str = "iot-cluster",
    ) -> None:
        if not name:
            raise ValueError("node name is required")
        self.name = name
        self.topic_prefix = topic_prefix
        self._lock = threading.RLock()
        self._scheduler = scheduler or ThreadScheduler()
        self._publisher = publisher or NullPublisher()
        self._rng = rng or random.Random()
        self._liveness_window = timedelta(seconds=float(liveness_window_s))

        self._devices: List[Device] = [replace(d) for d in (devices or [])]
        self._network = network or NetworkDescriptor(last_update=self._scheduler.now())
        self._disk = disk or DiskDescriptor()
        self._status = NodeStatus(status)
        self._workload = clamp(float(workload), 0.0, 100.0)
        self._last_heartbeat = last_heartbeat or self._scheduler.now()
        self._compression = compression or CompressionConfig()
        self._recovery = RecoveryStateMachine(self, self._scheduler, recovery, lock=self._lock)

        self._traces: List[Trace] = []
        self._trace_listeners: List[TraceListener] = []

    # ------------------------------------------------------------------
    # Construction from descriptors
    # ------------------------------------------------------------------
    @classmethod
    def from_config(cls, data: Mapping[str, Any], **kwargs: Any) -> "ClusterNode":
        """Build a node from a seed/API/persisted descriptor dict."""
        devices = data.get("devices", data.get("gpus"))
        network = data.get("network")
        disk = data.get("disk")
        last_heartbeat = data.get("last_heartbeat", data.get("lastHeartbeat"))
        node = cls(
            str(data.get("name") or ""),
            devices=[Device.from_dict(d) for d in devices or []],
            network=NetworkDescriptor.from_dict(network) if network else None,
            disk=DiskDescriptor.from_dict(disk) if disk else None,
            status=NodeStatus(data.get("status", NodeStatus.OFFLINE.value)),
            workload=safe_float(data.get("workload"), 0.0),
            last_heartbeat=parse_timestamp(last_heartbeat) if last_heartbeat else None,
            recovery=RecoveryConfig.from_dict(data.get("recovery")),
            compression=CompressionConfig.from_dict(data.get("compression")),
            **kwargs,
        )
        node._recovery.restore(int(data.get("failure_count", data.get("failureCount", 0)) or 0))
        for raw in data.get("traces") or []:
            node._traces.append(Trace.from_dict(raw))
        return node

    from_snapshot = from_config

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def devices(self) -> List[Device]:
        with self._lock:
            return [replace(d) for d in self._devices]

    @property
    def network(self) -> NetworkDescriptor:
        with self._lock:
            return replace(self._network)

    @property
    def disk(self) -> DiskDescriptor:
        with self._lock:
            return replace(self._disk)

    @property
    def workload(self) -> float:
        with self._lock:
            return self._workload

    @property
    def last_heartbeat(self) -> datetime:
        with self._lock:
            return self._last_heartbeat

    @property
    def stored_status(self) -> NodeStatus:
        with self._lock:
            return self._status

    @property
    def failure_count(self) -> int:
        return self._recovery.failure_count

    @property
    def pending_restarts(self) -> int:
        return self._recovery.pending_restarts

    @property
    def recovery_config(self) -> RecoveryConfig:
        with self._lock:
            return self._recovery.config

    @property
    def compression_config(self) -> CompressionConfig:
        with self._lock:
            return self._compression

    def get_status(self) -> NodeStatus:
        """Effective status: a node silent for longer than the liveness window reads as offline.

        The stored status is left untouched.
        """
        with self._lock:
            if self._scheduler.now() - self._last_heartbeat > self._liveness_window:
                return NodeStatus.OFFLINE
            return self._status

    def is_online(self) -> bool:
        return self.get_status() is NodeStatus.ONLINE

    # ------------------------------------------------------------------
    # Heartbeats and load
    # ------------------------------------------------------------------
    def update_heartbeat(self, data: HeartbeatData) -> bool:
        """Apply a heartbeat. Returns False when it is older than the current one and was dropped."""
        with self._lock:
            ts = data.timestamp or self._scheduler.now()
            if ts < self._last_heartbeat:
                logger.debug(
                    f"Node {self.name}: dropping stale heartbeat {format_timestamp(ts)} "
                    f"(current {format_timestamp(self._last_heartbeat)})"
                )
                return False

            self._last_heartbeat = ts
            self._status = NodeStatus(data.status)
            if data.devices is not None:
                self._devices = [replace(d) for d in data.devices]
            if data.network is not None:
                self._network = replace(data.network)
            if data.workload is not None:
                self._workload = clamp(float(data.workload), 0.0, 100.0)

            self.emit_trace(TraceSeverity.INFO, "Heartbeat received", self.describe())
            logger.info(f"Node {self.name} heartbeat: status={self._status.value} workload={self._workload:.1f}")
        self.publish_status()
        return True

    def simulate_load(self) -> None:
        """Random walk of device and network metrics; workload follows mean device utilization."""
        with self._lock:
            rng = self._rng
            for device in self._devices:
                device.utilization = min(100.0, device.utilization + rng.random() * 10)
                device.temperature = min(90.0, device.temperature + rng.random() * 5)

            net = self._network
            net.latency_ms = max(1.0, net.latency_ms + (rng.random() * 2 - 1))
            net.packet_loss_pct = clamp(net.packet_loss_pct + (rng.random() * 0.5 - 0.25), 0.0, 100.0)
            net.last_update = self._scheduler.now()

            if self._devices:
                mean = sum(d.utilization for d in self._devices) / len(self._devices)
                self._workload = clamp(mean, 0.0, 100.0)
            else:
                self._workload = 0.0

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def set_compression_config(self, partial: Optional[Mapping[str, Any]]) -> CompressionConfig:
        with self._lock:
            self._compression = self._compression.merged(partial)
            self.emit_trace(
                TraceSeverity.INFO,
                "Compression configuration updated",
                {"compression": self._compression.to_dict()},
            )
            config = self._compression
        self.publish_status()
        return config

    def set_recovery_config(self, partial: Optional[Mapping[str, Any]]) -> RecoveryConfig:
        with self._lock:
            config = self._recovery.update_config(partial)
            self.emit_trace(
                TraceSeverity.INFO,
                "Recovery configuration updated",
                {"recovery": config.to_dict()},
            )
        self.publish_status()
        return config

    # ------------------------------------------------------------------
    # Failure handling & device selection
    # ------------------------------------------------------------------
    def handle_failure(self) -> bool:
        return self._recovery.handle_failure()

    def set_status(self, status: NodeStatus) -> None:
        with self._lock:
            self._status = NodeStatus(status)

    def select_optimal_device(
        self, strategy: Any = LoadBalancingStrategy.LEAST_LOADED
    ) -> Optional[Device]:
        with self._lock:
            device = select_device(self._devices, strategy, self._rng)
            return replace(device) if device else None

    # ------------------------------------------------------------------
    # Commands & publishing
    # ------------------------------------------------------------------
    def handle_command(self, command: Mapping[str, Any]) -> None:
        """Apply an inbound command (``updateConfig`` or ``requestStatus``)."""
        ctype = command.get("type")
        logger.info(f"Node {self.name} received command {ctype!r}")
        if ctype == "updateConfig":
            data = command.get("data") or {}
            if data.get("compression"):
                self.set_compression_config(data["compression"])
            if data.get("recovery"):
                self.set_recovery_config(data["recovery"])
        elif ctype == "requestStatus":
            self.publish_status()
        else:
            logger.warning(f"Node {self.name}: unknown command type {ctype!r}")

    def status_payload(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "status": self.get_status().value,
                "workload": self._workload,
                "devices": devices_to_dicts(self._devices),
                "lastHeartbeat": format_timestamp(self._last_heartbeat),
                "failureCount": self._recovery.failure_count,
            }

    def publish_status(self) -> None:
        payload = self.status_payload()
        try:
            self._publisher.publish(f"{self.topic_prefix}/{self.name}/status", payload)
        except Exception as e:
            logger.error(f"Node {self.name}: failed to publish status: {e}")

    # ------------------------------------------------------------------
    # Traces
    # ------------------------------------------------------------------
    def add_trace_listener(self, listener: TraceListener) -> None:
        with self._lock:
            self._trace_listeners.append(listener)

    def emit_trace(self, severity: TraceSeverity, message: str, payload: Any = None) -> Trace:
        with self._lock:
            trace = Trace(
                timestamp=self._scheduler.now(),
                severity=TraceSeverity(severity),
                message=message,
                origin=self.name,
                payload=payload,
            )
            self._traces.append(trace)
            listeners = list(self._trace_listeners)
        logger.debug(f"Node {self.name} trace [{trace.severity.value}] {message}")

        for listener in listeners:
            try:
                listener(trace)
            except Exception as e:
                logger.error(f"Node {self.name}: trace listener failed: {e}")
        try:
            self._publisher.publish(f"{self.topic_prefix}/{self.name}/trace", trace.to_dict())
        except Exception as e:
            logger.error(f"Node {self.name}: failed to publish trace: {e}")
        return trace

    def traces(self) -> List[Trace]:
        with self._lock:
            return list(self._traces)

    def clear_traces(self) -> None:
        with self._lock:
            self._traces.clear()

    def restore_traces(self, traces: List[Trace]) -> None:
        """Prepend previously recorded traces without re-emitting them."""
        with self._lock:
            self._traces[:0] = list(traces)

    # ------------------------------------------------------------------
    # Views & lifecycle
    # ------------------------------------------------------------------
    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self.get_status().value,
                "devices": devices_to_dicts(self._devices),
                "disk": self._disk.to_dict(),
                "network": self._network.to_dict(),
                "workload": self._workload,
            }

    def snapshot(self, include_traces: bool = True) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = {
                "name": self.name,
                "devices": devices_to_dicts(self._devices),
                "network": self._network.to_dict(),
                "disk": self._disk.to_dict(),
                "status": self._status.value,
                "workload": self._workload,
                "last_heartbeat": format_timestamp(self._last_heartbeat),
                "failure_count": self._recovery.failure_count,
                "recovery": self._recovery.config.to_dict(),
                "compression": self._compression.to_dict(),
            }
            if include_traces:
                out["traces"] = [t.to_dict() for t in self._traces]
            return out

    def shutdown(self) -> None:
        """Cancel pending restarts so a removed node is never revived."""
        self._recovery.cancel_pending()
