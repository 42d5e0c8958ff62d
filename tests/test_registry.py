import random
from datetime import timedelta

import pytest

from edgesim.errors import AlreadyExists, NotFound
from edgesim.registry import ClusterRegistry
from edgesim.state import HeartbeatData, NetworkDescriptor, NodeStatus, RecoveryConfig


@pytest.fixture
def cluster(make_node):
    registry = ClusterRegistry()
    registry.add_node(make_node("a", utilizations=[30.0, 60.0]))
    registry.add_node(make_node("b", utilizations=[5.0], status=NodeStatus.OFFLINE))
    registry.add_node(make_node("c", utilizations=[10.0]))
    return registry


def test_optimal_device_skips_offline_nodes(cluster):
    node, device = cluster.get_optimal_device()
    assert node.name == "c"
    assert device.utilization == 10.0


def test_optimal_device_weights_node_workload(make_node):
    registry = ClusterRegistry()
    registry.add_node(make_node("busy", utilizations=[10.0], workload=80.0))
    registry.add_node(make_node("idle", utilizations=[30.0], workload=0.0))
    node, _ = registry.get_optimal_device()
    assert node.name == "idle"


def test_optimal_device_ignores_silent_nodes(cluster, scheduler):
    scheduler.advance(31)
    cluster.get_node("a").update_heartbeat(HeartbeatData(timestamp=scheduler.now(), status=NodeStatus.ONLINE))
    node, device = cluster.get_optimal_device()
    assert node.name == "a"
    assert device.utilization == 30.0


def test_optimal_device_none_when_nothing_online(make_node):
    registry = ClusterRegistry()
    registry.add_node(make_node("x", utilizations=[1.0], status=NodeStatus.OFFLINE))
    registry.add_node(make_node("y"))
    assert registry.get_optimal_device() is None


def test_temperature_aware_strategy(make_node):
    registry = ClusterRegistry(strategy="temperature-aware")
    registry.add_node(make_node("warm", utilizations=[5.0], temperatures=[70.0]))
    registry.add_node(make_node("cool", utilizations=[90.0], temperatures=[40.0]))
    node, _ = registry.get_optimal_device()
    assert node.name == "cool"


def test_round_robin_prefers_stalest_network(make_node, scheduler):
    registry = ClusterRegistry(strategy="round-robin", rng=random.Random(1))
    now = scheduler.now()
    registry.add_node(make_node("fresh", utilizations=[1.0], network=NetworkDescriptor(last_update=now)))
    registry.add_node(make_node("stale", utilizations=[99.0],
                                network=NetworkDescriptor(last_update=now - timedelta(minutes=5))))
    node, _ = registry.get_optimal_device()
    assert node.name == "stale"


def test_membership(cluster, make_node):
    assert len(cluster) == 3
    assert "a" in cluster
    assert cluster.names() == ["a", "b", "c"]

    with pytest.raises(AlreadyExists):
        cluster.add_node(make_node("a"))
    with pytest.raises(NotFound):
        cluster.get_node("zzz")
    with pytest.raises(NotFound):
        cluster.remove_node("zzz")

    cluster.remove_node("b")
    assert "b" not in cluster


def test_remove_node_cancels_pending_restart(make_node, scheduler):
    registry = ClusterRegistry()
    node = registry.add_node(make_node("r", recovery=RecoveryConfig(failure_threshold=1, retry_delay_ms=100)))
    node.handle_failure()
    registry.remove_node("r")

    scheduler.advance(1)
    assert node.stored_status is NodeStatus.OFFLINE


def test_cluster_status(cluster):
    cluster.get_node("a").update_heartbeat(
        HeartbeatData(timestamp=cluster.get_node("a").last_heartbeat, status=NodeStatus.ONLINE, workload=40.0)
    )
    cluster.get_node("c").update_heartbeat(
        HeartbeatData(timestamp=cluster.get_node("c").last_heartbeat, status=NodeStatus.ONLINE, workload=20.0)
    )
    status = cluster.cluster_status()

    assert set(status["nodes"]) == {"a", "b", "c"}
    assert status["active_nodes"] == 2
    assert status["total_devices"] == 4
    assert status["average_workload"] == pytest.approx(30.0)
    assert status["nodes"]["b"]["status"] == "offline"


def test_cluster_status_empty():
    status = ClusterRegistry().cluster_status()
    assert status["active_nodes"] == 0
    assert status["average_workload"] == 0.0


def test_set_strategy(cluster):
    assert cluster.set_strategy("temperature_aware").value == "temperature-aware"
    with pytest.raises(ValueError):
        cluster.set_strategy("random")
    assert cluster.strategy.value == "temperature-aware"


def test_broadcast_configs(cluster):
    cluster.broadcast_recovery_config({"strategy": "degraded", "retryDelay": 250})
    cluster.broadcast_compression_config({"enabled": True})
    for node in cluster.nodes():
        assert node.recovery_config.strategy.value == "degraded"
        assert node.recovery_config.retry_delay_ms == 250
        assert node.compression_config.enabled is True


def test_simulate_load_touches_every_node(cluster):
    before = {n.name: n.workload for n in cluster.nodes()}
    cluster.simulate_load()
    after = {n.name: n.workload for n in cluster.nodes()}
    assert all(after[name] >= before[name] for name in before)
    assert after["a"] > 0
