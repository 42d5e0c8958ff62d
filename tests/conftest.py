import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from edgesim.messaging import MemoryPublisher
from edgesim.node import ClusterNode
from edgesim.scheduler import ManualScheduler
from edgesim.state import Device, NodeStatus, RecoveryConfig
from edgesim.storage import FileStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def scheduler():
    sched = ManualScheduler(start=T0)
    try:
        yield sched
    finally:
        sched.shutdown()


@pytest.fixture
def publisher():
    return MemoryPublisher()


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "data")


@pytest.fixture
def make_node(scheduler, publisher):
    """Factory for online nodes sharing the virtual clock and in-memory publisher."""

    def _make(name="n1", utilizations=(), temperatures=None, status=NodeStatus.ONLINE,
              recovery=None, workload=0.0, **kwargs):
        temps = temperatures or [35.0] * len(utilizations)
        devices = [
            Device(model=f"gpu-{i}", memory_gb=8, utilization=u, temperature=t)
            for i, (u, t) in enumerate(zip(utilizations, temps))
        ]
        return ClusterNode(
            name,
            devices=devices,
            status=status,
            workload=workload,
            recovery=recovery or RecoveryConfig(),
            scheduler=scheduler,
            publisher=publisher,
            **kwargs,
        )

    return _make
