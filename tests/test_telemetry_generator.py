from datetime import datetime, timedelta, timezone

import pytest

from edgesim.errors import InvalidRange
from edgesim.state import Simulation
from edgesim.telemetry import TelemetryGenerator

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def generator(store, scheduler):
    gen = TelemetryGenerator(store, scheduler, interval_s=6, seed=2)
    try:
        yield gen
    finally:
        gen.shutdown()


def test_history_is_inclusive_and_cycles_phases(generator, store):
    sim = Simulation(name="line-1")
    count = generator.generate_history(sim, START, START + timedelta(minutes=1), anomaly_factor=0.3)

    assert count == 11
    rows = store.load_telemetry("line-1")
    assert [r["phase"] for r in rows] == [0, 1, 2, 3, 4, 0, 1, 2, 3, 4, 0]
    assert rows[-1]["timestamp"] == (START + timedelta(minutes=1)).isoformat()


def test_history_single_point_and_invalid_range(generator):
    sim = Simulation(name="s")
    assert generator.generate_history(sim, START, START) == 1
    with pytest.raises(InvalidRange):
        generator.generate_history(sim, START, START - timedelta(seconds=1))


def test_live_generation_start_pause_stop(generator, scheduler, store):
    sim = Simulation(name="live")
    generator.start(sim)
    generator.start(sim)
    assert generator.running() == ["live"]

    scheduler.advance(18)
    assert [r["phase"] for r in store.load_telemetry("live")] == [0, 1, 2]

    generator.pause(sim)
    scheduler.advance(60)
    assert len(store.load_telemetry("live")) == 3

    generator.start(sim)
    scheduler.advance(6)
    assert [r["phase"] for r in store.load_telemetry("live")][-1] == 3

    generator.stop(sim)
    assert not generator.is_running("live")
    scheduler.advance(60)
    assert len(store.load_telemetry("live")) == 4
