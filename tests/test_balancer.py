import random

from edgesim.policy import LoadBalancer, LoadBalancingStrategy, parse_strategy, select_device
from edgesim.state import Device


def _devices(*pairs):
    return [Device(model=f"d{i}", utilization=u, temperature=t) for i, (u, t) in enumerate(pairs)]


def test_least_loaded_returns_strict_minimum():
    devices = _devices((40, 30), (15, 80), (60, 20))
    assert select_device(devices, LoadBalancingStrategy.LEAST_LOADED).model == "d1"


def test_temperature_aware_returns_coolest():
    devices = _devices((40, 30), (15, 80), (60, 20))
    assert select_device(devices, "temperature-aware").model == "d2"


def test_ties_go_to_first_device():
    devices = _devices((10, 50), (10, 50))
    assert select_device(devices, "least-loaded").model == "d0"
    assert select_device(devices, "temperature-aware").model == "d0"


def test_empty_device_list():
    for strategy in LoadBalancingStrategy:
        assert select_device([], strategy) is None


def test_round_robin_picks_a_member_reproducibly():
    devices = _devices((1, 1), (2, 2), (3, 3))
    a = [select_device(devices, "round-robin", random.Random(3)).model for _ in range(5)]
    b = [select_device(devices, "round-robin", random.Random(3)).model for _ in range(5)]
    assert a == b
    assert set(a) <= {"d0", "d1", "d2"}

    balancer = LoadBalancer(LoadBalancingStrategy.ROUND_ROBIN, random.Random(11))
    picks = {balancer.select(devices).model for _ in range(200)}
    assert picks == {"d0", "d1", "d2"}


def test_unknown_strategy_falls_back_to_first():
    devices = _devices((90, 90), (1, 1))
    assert select_device(devices, "fastest").model == "d0"


def test_parse_strategy():
    assert parse_strategy("LEAST_LOADED") is LoadBalancingStrategy.LEAST_LOADED
    assert parse_strategy(" round-robin ") is LoadBalancingStrategy.ROUND_ROBIN
    assert parse_strategy(LoadBalancingStrategy.TEMPERATURE_AWARE) is LoadBalancingStrategy.TEMPERATURE_AWARE
    assert parse_strategy("random") is None
