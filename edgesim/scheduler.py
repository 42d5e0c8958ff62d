"""Timeline abstraction for deferred and periodic work.

Recovery delays, real-time sensor ticks and the periodic cluster loop all go
through a Scheduler so they can be cancelled and, in tests, driven by a
virtual clock instead of wall time.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from edgesim.state import utc_now

logger = logging.getLogger(__name__)


class Handle:
    """Cancelable reference to a scheduled callback."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None) -> None:
        self._cancelled = threading.Event()
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._on_cancel:
            self._on_cancel()


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> datetime:
        raise NotImplementedError

    @abstractmethod
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Handle:
        raise NotImplementedError

    @abstractmethod
    def call_every(self, interval_s: float, callback: Callable[[], None]) -> Handle:
        raise NotImplementedError

    def shutdown(self) -> None:
        return None


def _run_guarded(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception as e:
        logger.error(f"Scheduled callback {getattr(callback, '__name__', callback)!r} failed: {e}")


class ThreadScheduler(Scheduler):
    """Wall-clock scheduler backed by daemon timers and worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: List[Handle] = []

    def now(self) -> datetime:
        return utc_now()

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Handle:
        timer: Optional[threading.Timer] = None
        handle = Handle(on_cancel=lambda: timer.cancel() if timer else None)

        def fire() -> None:
            if handle.cancelled:
                return
            _run_guarded(callback)
            self._forget(handle)

        timer = threading.Timer(max(0.0, float(delay_s)), fire)
        timer.daemon = True
        self._track(handle)
        timer.start()
        return handle

    def call_every(self, interval_s: float, callback: Callable[[], None]) -> Handle:
        stop_event = threading.Event()
        handle = Handle(on_cancel=stop_event.set)
        interval = max(0.01, float(interval_s))

        def loop() -> None:
            while not stop_event.wait(interval):
                if handle.cancelled:
                    break
                _run_guarded(callback)
            self._forget(handle)

        thread = threading.Thread(target=loop, name="edgesim-periodic", daemon=True)
        self._track(handle)
        thread.start()
        return handle

    def shutdown(self) -> None:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle.cancel()

    def _track(self, handle: Handle) -> None:
        with self._lock:
            self._handles.append(handle)

    def _forget(self, handle: Handle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)


@dataclass(order=True)
class _Event:
    due: datetime
    seq: int
    callback: Callable[[], None] = field(compare=False)
    handle: Handle = field(compare=False)
    interval: Optional[timedelta] = field(compare=False, default=None)


class ManualScheduler(Scheduler):
    """Virtual-time scheduler; nothing fires until ``advance`` is called."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utc_now()
        self._queue: List[_Event] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Handle:
        handle = Handle()
        with self._lock:
            due = self._now + timedelta(seconds=max(0.0, float(delay_s)))
            heapq.heappush(self._queue, _Event(due, next(self._seq), callback, handle))
        return handle

    def call_every(self, interval_s: float, callback: Callable[[], None]) -> Handle:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        handle = Handle()
        interval = timedelta(seconds=float(interval_s))
        with self._lock:
            heapq.heappush(
                self._queue,
                _Event(self._now + interval, next(self._seq), callback, handle, interval),
            )
        return handle

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for evt in self._queue if not evt.handle.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every callback that falls due. Returns the number fired."""
        with self._lock:
            target = self._now + timedelta(seconds=float(seconds))
        fired = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0].due > target:
                    self._now = target
                    return fired
                evt = heapq.heappop(self._queue)
                self._now = evt.due
                if evt.handle.cancelled:
                    continue
                if evt.interval is not None:
                    heapq.heappush(
                        self._queue,
                        _Event(evt.due + evt.interval, next(self._seq), evt.callback, evt.handle, evt.interval),
                    )
            _run_guarded(evt.callback)
            fired += 1

    def shutdown(self) -> None:
        with self._lock:
            for evt in self._queue:
                evt.handle.cancel()
            self._queue.clear()
