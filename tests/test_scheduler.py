import threading
from datetime import datetime, timedelta, timezone

import pytest

from edgesim.scheduler import ManualScheduler, ThreadScheduler

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_manual_scheduler_fires_in_time_order():
    sched = ManualScheduler(start=T0)
    fired = []
    sched.call_later(2, lambda: fired.append("b"))
    sched.call_later(1, lambda: fired.append("a"))
    sched.call_later(2, lambda: fired.append("c"))

    assert sched.advance(1.5) == 1
    assert fired == ["a"]
    assert sched.now() == T0 + timedelta(seconds=1.5)

    assert sched.advance(1) == 2
    assert fired == ["a", "b", "c"]
    assert sched.pending == 0


def test_clock_reads_due_time_inside_callbacks():
    sched = ManualScheduler(start=T0)
    seen = []
    sched.call_later(3, lambda: seen.append(sched.now()))
    sched.advance(10)
    assert seen == [T0 + timedelta(seconds=3)]
    assert sched.now() == T0 + timedelta(seconds=10)


def test_periodic_and_cancel():
    sched = ManualScheduler(start=T0)
    ticks = []
    handle = sched.call_every(5, lambda: ticks.append(sched.now()))

    sched.advance(16)
    assert len(ticks) == 3

    handle.cancel()
    handle.cancel()
    sched.advance(30)
    assert len(ticks) == 3
    assert sched.pending == 0

    with pytest.raises(ValueError):
        sched.call_every(0, lambda: None)


def test_callbacks_may_schedule_more_work():
    sched = ManualScheduler(start=T0)
    fired = []

    def first():
        fired.append(1)
        sched.call_later(1, lambda: fired.append(2))

    sched.call_later(1, first)
    sched.advance(5)
    assert fired == [1, 2]


def test_failing_callback_does_not_stop_the_clock():
    sched = ManualScheduler(start=T0)
    fired = []

    def boom():
        raise RuntimeError("boom")

    sched.call_later(1, boom)
    sched.call_later(2, lambda: fired.append("after"))
    sched.advance(3)
    assert fired == ["after"]


def test_thread_scheduler_runs_and_cancels():
    sched = ThreadScheduler()
    done = threading.Event()
    cancelled = threading.Event()
    try:
        sched.call_later(0.05, done.set)
        handle = sched.call_later(0.2, cancelled.set)
        handle.cancel()

        assert done.wait(2.0)
        assert not cancelled.wait(0.4)

        ticks = []
        periodic = sched.call_every(0.02, lambda: ticks.append(1))
        deadline = threading.Event()
        deadline.wait(0.2)
        periodic.cancel()
        assert ticks
    finally:
        sched.shutdown()
