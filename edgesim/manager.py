"""Top-level wiring: nodes, simulations, sensor sessions and their persistence."""

from __future__ import annotations

import logging
import random
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from edgesim.config import Settings, load_node_seeds
from edgesim.dataset_index import DatasetIndex
from edgesim.errors import AlreadyExists, AlreadyRunning, NotFound, PersistenceFailure
from edgesim.messaging import Publisher, build_publisher
from edgesim.node import ClusterNode
from edgesim.registry import ClusterRegistry
from edgesim.scheduler import Handle, Scheduler, ThreadScheduler
from edgesim.state import (
    CompressionConfig,
    DatasetIndexEntry,
    Device,
    NodeStatus,
    RecoveryConfig,
    SensorReading,
    Simulation,
    SimulationStatus,
    Trace,
)
from edgesim.storage import FileStore
from edgesim.telemetry.generator import TelemetryGenerator
from edgesim.telemetry.sensors import SensorGenerator

logger = logging.getLogger(__name__)


def _edge_node(name: str, address: str, role: str, bandwidth: float, devices: List[Dict[str, Any]],
               disk_label: str = "NVMe|SDCard") -> Dict[str, Any]:
    return {
        "name": name,
        "devices": devices,
        "disk": {"label": disk_label, "size_gb": 64},
        "network": {"address": address, "role": role, "bandwidth": bandwidth, "latency_ms": 1, "packet_loss_pct": 0},
        "status": NodeStatus.ONLINE.value,
        "workload": 0,
    }


def _ampere(cores: int, memory_gb: float, tops: float, tensor_cores: int) -> Dict[str, Any]:
    return {
        "model": f"{cores} Ampere",
        "memory_gb": memory_gb,
        "utilization": 0,
        "temperature": 35,
        "tops": tops,
        "tensor_cores": tensor_cores,
    }


# Used when neither persisted nodes nor a seed file are available.
DEFAULT_EDGE_NODES: List[Dict[str, Any]] = [
    _edge_node("RPi 5", "192.168.1.99", "router", 1000, []),
    _edge_node("AGX Orin", "192.168.1.100", "node-sun", 10000, [_ampere(2048, 64, 275, 64)], disk_label="eMMC 5.1"),
    _edge_node("J202 NX (Yang)", "192.168.1.101", "node-white", 1000, [_ampere(1024, 16, 157, 32)]),
    _edge_node("J202 NX (Yin)", "192.168.1.102", "node-black", 1000, [_ampere(1024, 16, 157, 32)]),
    _edge_node("Orin Nano", "192.168.1.103", "node-tiny", 1000, [_ampere(1024, 8, 67, 32)]),
]


class SimulationManager:
    """
    Owns every long-lived component of a running simulator.

    Nothing here is process-global: the store, scheduler and publisher are
    either passed in or built from ``settings``, so tests can run several
    managers side by side on a virtual clock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[FileStore] = None,
        scheduler: Optional[Scheduler] = None,
        publisher: Optional[Publisher] = None,
        sensor_publisher_factory: Optional[Callable[[], Publisher]] = None,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
    ):
        self.settings = settings or Settings()
        self.store = store or FileStore(self.settings.data_dir)
        self.scheduler = scheduler or ThreadScheduler()
        self.publisher = publisher or build_publisher(self.settings.publish_url)
        self._sensor_publisher_factory = sensor_publisher_factory or self._default_sensor_publisher
        self.rng = rng or random.Random(seed)
        self.seed = seed

        self.index = DatasetIndex(self.store)
        self.registry = ClusterRegistry(self.settings.load_balancing_strategy, self.rng)
        self.telemetry = TelemetryGenerator(
            self.store, self.scheduler, self.settings.telemetry_interval_s, seed=seed
        )

        self._lock = threading.RLock()
        self._simulations: Dict[str, Simulation] = {}
        self._sensors: Optional[SensorGenerator] = None
        self._cluster_loop: Optional[Handle] = None
        self._owns_scheduler = scheduler is None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Load persisted state, seeding default nodes when there is none."""
        for raw in self.store.load_simulations():
            sim = Simulation.from_dict(raw)
            # Telemetry tasks do not survive a restart.
            if sim.status is SimulationStatus.RUNNING:
                sim.status = SimulationStatus.STOPPED
            self._simulations[sim.name] = sim

        persisted = self.store.load_nodes()
        if persisted:
            for raw in persisted:
                node = self._make_node(raw)
                node.restore_traces(self._load_traces(node.name))
                self.registry.add_node(node)
            logger.info(f"Loaded {len(persisted)} persisted node(s)")
            return

        seeds = load_node_seeds(self.settings.nodes_file) if self.settings.nodes_file else []
        source = self.settings.nodes_file
        if not seeds:
            seeds = DEFAULT_EDGE_NODES
            source = "built-in defaults"
        for raw in seeds:
            self.registry.add_node(self._make_node(raw, fresh=True))
        self.save_nodes()
        logger.info(f"Initialized {len(seeds)} node(s) from {source}")

    def _make_node(self, config: Mapping[str, Any], fresh: bool = False) -> ClusterNode:
        data = dict(config)
        if fresh:
            data.pop("last_heartbeat", None)
            data.pop("lastHeartbeat", None)
        node = ClusterNode.from_config(
            data,
            scheduler=self.scheduler,
            publisher=self.publisher,
            liveness_window_s=self.settings.liveness_window_s,
            rng=self.rng,
            topic_prefix=self.settings.topic_prefix,
        )
        node.add_trace_listener(self._persist_trace)
        return node

    def _load_traces(self, name: str) -> List[Trace]:
        try:
            return self.store.load_traces(name)
        except (PersistenceFailure, ValueError) as e:
            logger.error(f"Failed to load trace log for {name}: {e}")
            return []

    def _persist_trace(self, trace: Trace) -> None:
        try:
            self.store.append_trace(trace.origin, trace)
        except (PersistenceFailure, ValueError) as e:
            logger.error(f"Failed to persist trace for {trace.origin}: {e}")

    def save_nodes(self) -> None:
        self.store.save_nodes(self.registry.snapshot())

    def _save_simulations(self) -> None:
        with self._lock:
            docs = [s.to_dict() for s in self._simulations.values()]
        self.store.save_simulations(docs)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def add_node(self, name: str, **config: Any) -> ClusterNode:
        node = self._make_node({**config, "name": name})
        self.registry.add_node(node)
        self.save_nodes()
        return node

    def remove_node(self, name: str) -> None:
        self.registry.remove_node(name)
        self.save_nodes()
        try:
            self.store.clear_traces(name)
        except (PersistenceFailure, ValueError) as e:
            logger.error(f"Failed to remove trace log for {name}: {e}")

    def get_node(self, name: str) -> ClusterNode:
        return self.registry.get_node(name)

    def nodes(self) -> List[ClusterNode]:
        return self.registry.nodes()

    def clear_node_traces(self, name: str) -> None:
        self.get_node(name).clear_traces()
        self.store.clear_traces(name)

    # ------------------------------------------------------------------
    # Simulations
    # ------------------------------------------------------------------
    def add_simulation(self, simulation: Union[Simulation, Mapping[str, Any]]) -> Simulation:
        sim = simulation if isinstance(simulation, Simulation) else Simulation.from_dict(simulation)
        with self._lock:
            if sim.name in self._simulations:
                raise AlreadyExists(f"simulation {sim.name!r} already exists")
            sim.last_update = self.scheduler.now()
            self._simulations[sim.name] = sim
        self._save_simulations()
        logger.info(f"Simulation added: {sim.name}")
        return sim

    def remove_simulation(self, name: str) -> None:
        with self._lock:
            sim = self._simulations.pop(name, None)
        if sim is None:
            raise NotFound(f"simulation {name!r} not found")
        self.telemetry.stop(sim)
        self._save_simulations()
        logger.info(f"Simulation removed: {name}")

    def get_simulation(self, name: str) -> Simulation:
        with self._lock:
            sim = self._simulations.get(name)
        if sim is None:
            raise NotFound(f"simulation {name!r} not found")
        return sim

    def simulations(self) -> List[Simulation]:
        with self._lock:
            return list(self._simulations.values())

    def running_simulations(self) -> List[Simulation]:
        return [s for s in self.simulations() if s.status is SimulationStatus.RUNNING]

    def _set_simulation_status(self, name: str, status: SimulationStatus) -> Simulation:
        sim = self.get_simulation(name)
        with self._lock:
            sim.status = status
            sim.last_update = self.scheduler.now()
        self._save_simulations()
        return sim

    def start_simulation(self, name: str) -> Simulation:
        sim = self._set_simulation_status(name, SimulationStatus.RUNNING)
        self.telemetry.start(sim)
        logger.info(f"Simulation started: {name}")
        return sim

    def stop_simulation(self, name: str) -> Simulation:
        sim = self._set_simulation_status(name, SimulationStatus.STOPPED)
        self.telemetry.stop(sim)
        logger.info(f"Simulation stopped: {name}")
        return sim

    def pause_simulation(self, name: str) -> Simulation:
        sim = self._set_simulation_status(name, SimulationStatus.PAUSED)
        self.telemetry.pause(sim)
        logger.info(f"Simulation paused: {name}")
        return sim

    def generate_simulation_history(
        self, name: str, start: datetime, end: datetime, anomaly_factor: float = 0.0
    ) -> int:
        sim = self.get_simulation(name)
        return self.telemetry.generate_history(sim, start, end, anomaly_factor)

    def simulation_telemetry(self, name: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.get_simulation(name)
        return self.store.load_telemetry(name, limit)

    # ------------------------------------------------------------------
    # Sensor sessions
    # ------------------------------------------------------------------
    def _default_sensor_publisher(self) -> Optional[Publisher]:
        # No publish URL means real-time sessions are not configured.
        if not self.settings.publish_url:
            return None
        return build_publisher(self.settings.publish_url)

    def _new_sensor_session(
        self, device_count: int, anomaly_factor: float, publisher: Optional[Publisher] = None
    ) -> SensorGenerator:
        with self._lock:
            if self._sensors is not None:
                raise AlreadyRunning("a sensor simulation is already running")
            self._sensors = SensorGenerator(
                device_count,
                anomaly_factor,
                index=self.index,
                scheduler=self.scheduler,
                publisher=publisher,
                step_s=self.settings.sensor_step_s,
                tick_s=self.settings.sensor_tick_s,
                seed=self.seed,
            )
            return self._sensors

    def start_historical_sensors(
        self,
        device_count: int,
        anomaly_factor: float,
        start: datetime,
        end: Optional[datetime] = None,
        dataset_id: Optional[str] = None,
        max_records: Optional[int] = None,
    ) -> DatasetIndexEntry:
        """
        Generate and persist a historical batch. Returns its index entry.

        With neither ``end`` nor ``max_records`` the run lasts until
        stop_sensors() is called from another thread.
        """
        sensors = self._new_sensor_session(device_count, anomaly_factor)
        logger.info(f"Starting historical sensor simulation: devices={device_count} {start} -> {end}")
        try:
            sensors.generate_historical(start, end, dataset_id=dataset_id, max_records=max_records)
        finally:
            with self._lock:
                if self._sensors is sensors:
                    self._sensors = None
        return self.index.get(sensors.last_dataset_id)

    def start_realtime_sensors(self, device_count: int, anomaly_factor: float) -> SensorGenerator:
        publisher = self._sensor_publisher_factory()
        sensors = self._new_sensor_session(device_count, anomaly_factor, publisher)
        try:
            sensors.start_realtime()
        except Exception:
            with self._lock:
                self._sensors = None
            raise
        logger.info(f"Starting realtime sensor simulation: devices={device_count}")
        return sensors

    def stop_sensors(self) -> None:
        with self._lock:
            sensors = self._sensors
            self._sensors = None
        if sensors is None:
            raise NotFound("no sensor simulation is running")
        sensors.stop()

    @property
    def sensors(self) -> Optional[SensorGenerator]:
        with self._lock:
            return self._sensors

    def query_dataset(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[int] = None,
        only_anomalies: bool = False,
    ) -> List[SensorReading]:
        return self.index.query(start, end, device_id, only_anomalies)

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------
    def set_load_balancing_strategy(self, strategy: Any) -> None:
        self.registry.set_strategy(strategy)

    def set_recovery_config(self, partial: Mapping[str, Any]) -> RecoveryConfig:
        # Validate once so a bad field fails before any node changes.
        config = RecoveryConfig().merged(partial)
        self.registry.broadcast_recovery_config(partial)
        self.save_nodes()
        logger.info(f"Failure recovery configuration updated: {partial}")
        return config

    def set_compression_config(self, partial: Mapping[str, Any]) -> CompressionConfig:
        config = CompressionConfig().merged(partial)
        self.registry.broadcast_compression_config(partial)
        self.save_nodes()
        logger.info(f"Compression configuration updated: {partial}")
        return config

    def cluster_status(self) -> Dict[str, Any]:
        return self.registry.cluster_status()

    def get_optimal_device(self) -> Optional[Tuple[ClusterNode, Device]]:
        return self.registry.get_optimal_device()

    def simulate_cluster_load(self) -> None:
        self.registry.simulate_load()

    def _cluster_tick(self) -> None:
        self.registry.simulate_load()
        for node in self.registry.nodes():
            node.publish_status()

    def start_cluster_loop(self, interval_s: Optional[float] = None) -> None:
        interval = float(interval_s or self.settings.cluster_loop_interval_s)
        with self._lock:
            if self._cluster_loop is not None:
                logger.warning("Cluster load loop already running")
                return
            self._cluster_loop = self.scheduler.call_every(interval, self._cluster_tick)
        logger.info(f"Cluster load loop started (every {interval}s)")

    def stop_cluster_loop(self) -> None:
        with self._lock:
            handle = self._cluster_loop
            self._cluster_loop = None
        if handle is not None:
            handle.cancel()
            logger.info("Cluster load loop stopped")

    def shutdown(self) -> None:
        self.stop_cluster_loop()
        with self._lock:
            sensors = self._sensors
            self._sensors = None
        if sensors is not None:
            sensors.stop()
        self.telemetry.shutdown()
        try:
            self.save_nodes()
        except PersistenceFailure as e:
            logger.error(f"Failed to save nodes on shutdown: {e}")
        for node in self.registry.nodes():
            node.shutdown()
        try:
            self.publisher.close()
        except Exception as e:
            logger.error(f"Failed to close publisher: {e}")
        if self._owns_scheduler:
            self.scheduler.shutdown()
        logger.info("SimulationManager shut down")
