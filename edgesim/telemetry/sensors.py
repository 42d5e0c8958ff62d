"""Synthetic PLC sensor readings: five sensors cycling through five 6-second phases."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from edgesim.dataset_index import DatasetIndex
from edgesim.errors import AlreadyRunning, InvalidRange, NotConfigured
from edgesim.messaging import Publisher
from edgesim.scheduler import Handle, Scheduler, ThreadScheduler
from edgesim.state import SensorReading, clamp

logger = logging.getLogger(__name__)

PHASE_COUNT = 5
PHASE_SECONDS = 6
CYCLE_SECONDS = PHASE_COUNT * PHASE_SECONDS

# (min, max) per phase
SENSOR_RANGES: Dict[str, List[Tuple[float, float]]] = {
	"s1": [(0, 5), (5, 10), (15, 16), (5, 10), (0, 5)],
	"s2": [(0, 5), (0, 5), (10, 15), (0, 5), (0, 5)],
	"s3": [(0, 5), (10, 20), (20, 30), (10, 20), (0, 5)],
	"s4": [(0, 30), (30, 35), (35, 40), (40, 45), (45, 50)],
	"s5": [(0, 1), (1, 2), (3, 4), (2, 3), (1, 0)],
}


def phase_for(ts: datetime) -> int:
	"""Phase 0..4 of the 30-second cycle that ``ts`` falls in."""
	return (int(ts.timestamp()) % CYCLE_SECONDS) // PHASE_SECONDS


def draw_anomaly(anomaly_factor: float, rng: Any) -> bool:
	return bool(rng.random() < anomaly_factor * 0.1)


def generate_values(phase: int, is_anomaly: bool, anomaly_factor: float, rng: Any) -> Dict[str, float]:
	"""
	One value per sensor, uniform within the phase range.

	Anomalous readings are pushed by (max - min) * anomaly_factor in a random
	direction, so they may land outside the nominal range.
	"""
	values: Dict[str, float] = {}
	for sensor, ranges in SENSOR_RANGES.items():
		lo, hi = ranges[phase]
		value = lo + rng.random() * (hi - lo)
		if is_anomaly:
			sign = 1 if rng.random() > 0.5 else -1
			value += sign * (hi - lo) * anomaly_factor
		values[sensor] = round(float(value), 2)
	return values


class SensorGenerator:
	"""
	Produces readings for ``device_count`` PLCs, either as a historical batch
	persisted through the dataset index or as a real-time stream published on
	``plc/{id}/metrics``.

	Only one session (historical or real-time) may be active at a time.
	"""

	def __init__(
		self,
		device_count: int,
		anomaly_factor: float,
		*,
		store: Optional[Any] = None,
		index: Optional[DatasetIndex] = None,
		scheduler: Optional[Scheduler] = None,
		publisher: Optional[Publisher] = None,
		step_s: float = 30.0,
		tick_s: float = 30.0,
		pace_s: float = 0.0,
		seed: Optional[int] = None,
	) -> None:
		"""
		Args:
			device_count: Number of simulated PLCs (ids 0..device_count-1)
			anomaly_factor: Clamped to [0, 1]; anomaly probability is factor * 0.1
			store: FileStore, only used when no index is given
			index: DatasetIndex receiving historical batches
			scheduler: Clock and tick source for the real-time stream
			publisher: Sink for real-time readings
			step_s: Spacing of historical readings
			tick_s: Interval between real-time ticks
			pace_s: Optional real delay between historical steps
			seed: Seed for reproducible runs
		"""
		if int(device_count) < 1:
			raise ValueError("device_count must be >= 1")
		if step_s <= 0 or tick_s <= 0:
			raise ValueError("step_s and tick_s must be positive")
		self.device_count = int(device_count)
		self.anomaly_factor = clamp(float(anomaly_factor), 0.0, 1.0)
		self.index = index if index is not None else (DatasetIndex(store) if store is not None else None)
		self.scheduler = scheduler or ThreadScheduler()
		self.publisher = publisher
		self.step_s = float(step_s)
		self.tick_s = float(tick_s)
		self.pace_s = float(pace_s)

		self._rng = np.random.default_rng(seed)
		self._lock = threading.RLock()
		self._stop_event = threading.Event()
		self._running = False
		self._mode: Optional[str] = None
		self._tick_handle: Optional[Handle] = None
		self.published = 0
		self.last_dataset_id: Optional[str] = None

		logger.info(
			f"SensorGenerator initialized: devices={self.device_count} "
			f"anomaly_factor={self.anomaly_factor:.2f}"
		)

	@property
	def is_running(self) -> bool:
		with self._lock:
			return self._running

	@property
	def mode(self) -> Optional[str]:
		with self._lock:
			return self._mode

	def _reading(self, ts: datetime, device_id: int) -> SensorReading:
		phase = phase_for(ts)
		is_anomaly = draw_anomaly(self.anomaly_factor, self._rng)
		return SensorReading(
			timestamp=ts,
			device_id=device_id,
			phase=phase,
			values=generate_values(phase, is_anomaly, self.anomaly_factor, self._rng),
			is_anomaly=is_anomaly,
		)

	def _begin(self, mode: str) -> None:
		# Caller holds self._lock
		if self._running:
			raise AlreadyRunning(f"sensor session already running ({self._mode})")
		self._running = True
		self._mode = mode
		self._stop_event.clear()

	# ------------------------------------------------------------------
	# Historical mode
	# ------------------------------------------------------------------
	def iter_historical(self, start: datetime, end: Optional[datetime] = None) -> Iterator[SensorReading]:
		"""
		Lazily yield one reading per device for every step in ``[start, end)``.

		With no ``end`` the iterator only finishes when stop() is called.
		"""
		step = timedelta(seconds=self.step_s)
		current = start
		while end is None or current < end:
			if self._stop_event.is_set():
				logger.info("Historical generation interrupted by stop()")
				return
			for device_id in range(self.device_count):
				reading = self._reading(current, device_id)
				logger.debug(
					f"Historical reading plc={device_id} phase={reading.phase} "
					f"anomaly={reading.is_anomaly} ts={current.isoformat()}"
				)
				yield reading
			current += step
			if self.pace_s > 0:
				self._stop_event.wait(self.pace_s)

	def generate_historical(
		self,
		start: datetime,
		end: Optional[datetime] = None,
		dataset_id: Optional[str] = None,
		max_records: Optional[int] = None,
	) -> List[SensorReading]:
		"""Materialise a historical batch, persist it with its index entry and return it."""
		if end is not None and start > end:
			raise InvalidRange(f"start {start.isoformat()} is after end {end.isoformat()}")
		if self.index is None:
			raise NotConfigured("historical generation needs a dataset index")

		with self._lock:
			self._begin("historical")

		logger.info(
			f"Starting historical generation: start={start.isoformat()} "
			f"end={end.isoformat() if end else 'open'} devices={self.device_count}"
		)
		readings: List[SensorReading] = []
		try:
			for reading in self.iter_historical(start, end):
				readings.append(reading)
				if len(readings) % 100 == 0:
					logger.debug(f"Historical generation progress: {len(readings)} records")
				if max_records is not None and len(readings) >= max_records:
					break
		finally:
			with self._lock:
				self._running = False
				self._mode = None

		dataset_id = dataset_id or f"historical_{start.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}"
		self.index.save_batch(dataset_id, readings)
		self.last_dataset_id = dataset_id
		logger.info(f"Historical generation completed: {len(readings)} records in {dataset_id}")
		return readings

	# ------------------------------------------------------------------
	# Real-time mode
	# ------------------------------------------------------------------
	def start_realtime(self) -> None:
		"""Publish a reading per device every ``tick_s`` until stop()."""
		with self._lock:
			if self.publisher is None:
				raise NotConfigured("real-time generation needs a publisher")
			self._begin("realtime")
			self._tick_handle = self.scheduler.call_every(self.tick_s, self._tick)
		logger.info(f"Started real-time simulation: devices={self.device_count} interval={self.tick_s}s")

	def _tick(self) -> None:
		with self._lock:
			if not self._running or self._mode != "realtime":
				return
			ts = self.scheduler.now()
			for device_id in range(self.device_count):
				reading = self._reading(ts, device_id)
				topic = f"plc/{device_id}/metrics"
				try:
					self.publisher.publish(topic, reading.to_dict())
					self.published += 1
				except Exception as e:
					logger.error(f"Failed to publish on {topic}: {e}")
					continue
				logger.debug(f"Published {topic} phase={reading.phase} anomaly={reading.is_anomaly}")

	def stop(self) -> None:
		"""End the active session. Safe to call repeatedly."""
		with self._lock:
			self._stop_event.set()
			if self._tick_handle is not None:
				self._tick_handle.cancel()
				self._tick_handle = None
			was_realtime = self._mode == "realtime"
			was_running = self._running
			self._running = False
			self._mode = None
			if was_realtime and self.publisher is not None:
				try:
					self.publisher.close()
				except Exception as e:
					logger.error(f"Failed to close sensor publisher: {e}")
		if was_running:
			logger.info("Stopped sensor simulation")
