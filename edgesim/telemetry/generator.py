"""Per-simulation telemetry snapshots written to the file store."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np

from edgesim.errors import InvalidRange, PersistenceFailure
from edgesim.scheduler import Handle, Scheduler
from edgesim.state import Simulation, clamp, format_timestamp
from edgesim.storage import FileStore
from edgesim.telemetry.sensors import PHASE_COUNT, PHASE_SECONDS, draw_anomaly, generate_values

logger = logging.getLogger(__name__)


class TelemetryGenerator:
	"""
	Emits one snapshot per running simulation every ``interval_s``.

	The phase advances 0 -> 4 and wraps with every snapshot, independent of
	the wall clock.
	"""

	def __init__(
		self,
		store: FileStore,
		scheduler: Scheduler,
		interval_s: float = float(PHASE_SECONDS),
		seed: Optional[int] = None,
	) -> None:
		self.store = store
		self.scheduler = scheduler
		self.interval_s = float(interval_s)
		self._rng = np.random.default_rng(seed)
		self._lock = threading.RLock()
		self._handles: Dict[str, Handle] = {}
		self._phases: Dict[str, int] = {}

	def _snapshot(self, ts: datetime, phase: int, anomaly_factor: float = 0.0) -> Dict[str, Any]:
		is_anomaly = anomaly_factor > 0 and draw_anomaly(anomaly_factor, self._rng)
		return {
			"timestamp": format_timestamp(ts),
			"phase": phase,
			"values": generate_values(phase, is_anomaly, anomaly_factor, self._rng),
			"anomaly": is_anomaly,
		}

	def _save(self, name: str, snapshot: Dict[str, Any]) -> None:
		try:
			self.store.save_telemetry(name, snapshot)
		except PersistenceFailure as e:
			logger.error(f"Error saving telemetry for {name}: {e}")

	def is_running(self, name: str) -> bool:
		with self._lock:
			return name in self._handles

	def running(self) -> List[str]:
		with self._lock:
			return sorted(self._handles)

	def start(self, simulation: Simulation) -> None:
		name = simulation.name
		with self._lock:
			if name in self._handles:
				logger.warning(f"Telemetry generation already running for {name}")
				return
			self._phases.setdefault(name, 0)
			self._handles[name] = self.scheduler.call_every(self.interval_s, lambda: self._tick(name))
		logger.info(f"Started telemetry generation for {name}")

	def _tick(self, name: str) -> None:
		with self._lock:
			if name not in self._handles:
				return
			phase = self._phases.get(name, 0)
			self._phases[name] = (phase + 1) % PHASE_COUNT
		self._save(name, self._snapshot(self.scheduler.now(), phase))

	def stop(self, simulation: Simulation) -> None:
		with self._lock:
			handle = self._handles.pop(simulation.name, None)
			self._phases.pop(simulation.name, None)
		if handle is not None:
			handle.cancel()
			logger.info(f"Stopped telemetry generation for {simulation.name}")

	def pause(self, simulation: Simulation) -> None:
		# Paused simulations resume from the phase they stopped at.
		with self._lock:
			handle = self._handles.pop(simulation.name, None)
		if handle is not None:
			handle.cancel()
		logger.info(f"Paused telemetry generation for {simulation.name}")

	def shutdown(self) -> None:
		with self._lock:
			handles = list(self._handles.values())
			self._handles.clear()
		for handle in handles:
			handle.cancel()

	def generate_history(
		self,
		simulation: Simulation,
		start: datetime,
		end: datetime,
		anomaly_factor: float = 0.0,
	) -> int:
		"""Write snapshots every 6 s from ``start`` to ``end`` inclusive. Returns how many."""
		if start > end:
			raise InvalidRange(f"start {start.isoformat()} is after end {end.isoformat()}")
		anomaly_factor = clamp(float(anomaly_factor), 0.0, 1.0)
		logger.info(
			f"Starting historical telemetry for {simulation.name}: "
			f"{start.isoformat()} -> {end.isoformat()} anomaly_factor={anomaly_factor:.2f}"
		)

		step = timedelta(seconds=PHASE_SECONDS)
		current = start
		phase = 0
		count = 0
		while current <= end:
			self._save(simulation.name, self._snapshot(current, phase, anomaly_factor))
			count += 1
			if count % 100 == 0:
				logger.info(f"Telemetry progress for {simulation.name}: {count} records at {current.isoformat()}")
			current += step
			phase = (phase + 1) % PHASE_COUNT

		logger.info(f"Historical telemetry completed for {simulation.name}: {count} records")
		return count
