"""Registry of cluster nodes with cluster-wide status and device selection."""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from edgesim.errors import AlreadyExists, NotFound
from edgesim.node import ClusterNode
from edgesim.policy.balancer import LoadBalancer, LoadBalancingStrategy, parse_strategy
from edgesim.state import Device, NodeStatus

logger = logging.getLogger(__name__)


class ClusterRegistry:
    """Owns the node map. Node state is only ever changed through node methods."""

    def __init__(
        self,
        strategy: Any = LoadBalancingStrategy.LEAST_LOADED,
        rng: Optional[random.Random] = None,
    ):
        self._lock = threading.RLock()
        self._nodes: Dict[str, ClusterNode] = {}
        self.balancer = LoadBalancer(self._parse(strategy), rng)

    @staticmethod
    def _parse(strategy: Any) -> LoadBalancingStrategy:
        parsed = parse_strategy(strategy)
        if parsed is None:
            raise ValueError(f"unknown load balancing strategy: {strategy!r}")
        return parsed

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def add_node(self, node: ClusterNode) -> ClusterNode:
        with self._lock:
            if node.name in self._nodes:
                raise AlreadyExists(f"node {node.name!r} already exists")
            self._nodes[node.name] = node
        logger.info(f"Node '{node.name}' added to cluster")
        return node

    def remove_node(self, name: str) -> ClusterNode:
        with self._lock:
            node = self._nodes.pop(name, None)
        if node is None:
            raise NotFound(f"node {name!r} not found")
        node.shutdown()
        logger.info(f"Node '{name}' removed from cluster")
        return node

    def get_node(self, name: str) -> ClusterNode:
        with self._lock:
            node = self._nodes.get(name)
        if node is None:
            raise NotFound(f"node {name!r} not found")
        return node

    def nodes(self) -> List[ClusterNode]:
        with self._lock:
            return list(self._nodes.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._nodes)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    # ------------------------------------------------------------------
    # Cluster-wide configuration
    # ------------------------------------------------------------------
    @property
    def strategy(self) -> LoadBalancingStrategy:
        return self.balancer.strategy

    def set_strategy(self, strategy: Any) -> LoadBalancingStrategy:
        parsed = self._parse(strategy)
        with self._lock:
            self.balancer.strategy = parsed
        logger.info(f"Load balancing strategy set to {parsed.value}")
        return parsed

    def broadcast_recovery_config(self, partial: Mapping[str, Any]) -> None:
        for node in self.nodes():
            node.set_recovery_config(partial)

    def broadcast_compression_config(self, partial: Mapping[str, Any]) -> None:
        for node in self.nodes():
            node.set_compression_config(partial)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def cluster_status(self) -> Dict[str, Any]:
        nodes = self.nodes()
        described = {node.name: node.describe() for node in nodes}
        online = [d for d in described.values() if d["status"] == NodeStatus.ONLINE.value]
        average = sum(d["workload"] for d in online) / len(online) if online else 0.0
        return {
            "nodes": described,
            "active_nodes": len(online),
            "total_devices": sum(len(d["devices"]) for d in described.values()),
            "average_workload": average,
            "strategy": self.strategy.value,
        }

    def _metric(self, node: ClusterNode, device: Device, workload: float) -> float:
        strategy = self.strategy
        if strategy is LoadBalancingStrategy.LEAST_LOADED:
            return device.utilization + workload * 0.5
        if strategy is LoadBalancingStrategy.TEMPERATURE_AWARE:
            return device.temperature + workload * 0.2
        # round robin: the node whose network was refreshed longest ago wins
        return node.network.last_update.timestamp()

    def get_optimal_device(self) -> Optional[Tuple[ClusterNode, Device]]:
        """Best device across effectively online nodes, or None when none qualifies."""
        best: Optional[Tuple[ClusterNode, Device]] = None
        best_metric = float("inf")
        for node in self.nodes():
            if node.get_status() is not NodeStatus.ONLINE:
                continue
            device = self.balancer.select(node.devices)
            if device is None:
                continue
            metric = self._metric(node, device, node.workload)
            if metric < best_metric:
                best, best_metric = (node, device), metric
        if best is not None:
            logger.debug(f"Optimal device: {best[1].model} on {best[0].name} (metric={best_metric:.2f})")
        return best

    def simulate_load(self) -> None:
        for node in self.nodes():
            node.simulate_load()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [node.snapshot(include_traces=False) for node in self.nodes()]
