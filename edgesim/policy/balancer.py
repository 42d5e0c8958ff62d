from __future__ import annotations

import logging
import random
from enum import Enum
from typing import Any, Optional, Sequence

from edgesim.state import Device

logger = logging.getLogger(__name__)


class LoadBalancingStrategy(str, Enum):
    ROUND_ROBIN = "round-robin"
    LEAST_LOADED = "least-loaded"
    TEMPERATURE_AWARE = "temperature-aware"


def parse_strategy(value: Any) -> Optional[LoadBalancingStrategy]:
    """Return the strategy for ``value`` or None when it is not recognised."""
    if isinstance(value, LoadBalancingStrategy):
        return value
    try:
        return LoadBalancingStrategy(str(value).strip().lower().replace("_", "-"))
    except ValueError:
        return None


def _first_min(devices: Sequence[Device], attr: str) -> Device:
    best = devices[0]
    for device in devices[1:]:
        if getattr(device, attr) < getattr(best, attr):
            best = device
    return best


def select_device(
    devices: Sequence[Device],
    strategy: Any,
    rng: Optional[random.Random] = None,
) -> Optional[Device]:
    """Pick one device from ``devices`` according to ``strategy``.

    Round robin is a uniform random pick rather than a rotating cursor; callers
    invoke it often enough that the expected spread is what matters. Ties in
    the other strategies go to the first device in list order.
    """
    if not devices:
        return None

    parsed = parse_strategy(strategy)
    if parsed is LoadBalancingStrategy.ROUND_ROBIN:
        return (rng or random).choice(list(devices))
    if parsed is LoadBalancingStrategy.LEAST_LOADED:
        return _first_min(devices, "utilization")
    if parsed is LoadBalancingStrategy.TEMPERATURE_AWARE:
        return _first_min(devices, "temperature")

    logger.debug(f"Unknown load balancing strategy {strategy!r}, falling back to first device")
    return devices[0]


class LoadBalancer:
    def __init__(
        self,
        strategy: LoadBalancingStrategy = LoadBalancingStrategy.LEAST_LOADED,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.strategy = strategy
        self.rng = rng or random.Random()

    def select(self, devices: Sequence[Device]) -> Optional[Device]:
        return select_device(devices, self.strategy, self.rng)
