"""Per-node failure counting and recovery (restart / failover / degraded)."""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Mapping, Optional, Protocol

from edgesim.scheduler import Handle, Scheduler
from edgesim.state import NodeStatus, RecoveryConfig, RecoveryStrategy, TraceSeverity

logger = logging.getLogger(__name__)


class RecoveryTarget(Protocol):
	name: str

	def set_status(self, status: NodeStatus) -> None: ...

	def emit_trace(self, severity: TraceSeverity, message: str, payload: Any = None) -> Any: ...

	def publish_status(self) -> None: ...


class RecoveryStateMachine:
	"""
	Counts failures for one node and decides when and how to recover.

	States cycle Healthy -> (Offline | Degraded) -> Healthy with no terminal
	state. A restart is a scheduled continuation: handle_failure() returns as
	soon as the node is marked offline, and the scheduler brings it back after
	retry_delay_ms. Overlapping restarts are not deduplicated; each failure that
	crosses the threshold schedules its own continuation.
	"""

	def __init__(
		self,
		target: RecoveryTarget,
		scheduler: Scheduler,
		config: Optional[RecoveryConfig] = None,
		lock: Optional[threading.RLock] = None,
	) -> None:
		self.target = target
		self.scheduler = scheduler
		self._config = config or RecoveryConfig()
		self._lock = lock or threading.RLock()
		self._failure_count = 0
		self._pending: List[Handle] = []

	@property
	def config(self) -> RecoveryConfig:
		return self._config

	@property
	def failure_count(self) -> int:
		with self._lock:
			return self._failure_count

	@property
	def pending_restarts(self) -> int:
		with self._lock:
			return sum(1 for h in self._pending if not h.cancelled)

	def update_config(self, partial: Optional[Mapping[str, Any]]) -> RecoveryConfig:
		with self._lock:
			self._config = self._config.merged(partial)
			return self._config

	def restore(self, failure_count: int) -> None:
		with self._lock:
			self._failure_count = max(0, int(failure_count))

	def reset(self) -> None:
		with self._lock:
			self._failure_count = 0

	def handle_failure(self) -> bool:
		"""Record a failure. Returns True when recovery was initiated by this call."""
		with self._lock:
			self._failure_count += 1
			count = self._failure_count
			threshold = self._config.failure_threshold

			if count < threshold:
				self.target.emit_trace(
					TraceSeverity.INFO,
					f"Node failure tolerated ({count}/{threshold})",
					{"failureCount": count},
				)
				return False

			self.target.emit_trace(
				TraceSeverity.WARNING,
				f"Node failure detected. Initiating recovery (attempt {count})",
				{"failureCount": count, "strategy": self._config.strategy.value},
			)
			logger.warning(
				f"Node {self.target.name}: failure {count}/{threshold}, "
				f"recovering via {self._config.strategy.value}"
			)

			strategy = self._config.strategy
			if strategy is RecoveryStrategy.RESTART:
				self._restart()
			elif strategy is RecoveryStrategy.FAILOVER:
				self._failover()
			elif strategy is RecoveryStrategy.DEGRADED:
				self._enter_degraded()
			return True

	def cancel_pending(self) -> int:
		"""Cancel every scheduled restart. Returns how many were still pending."""
		with self._lock:
			pending = [h for h in self._pending if not h.cancelled]
			self._pending.clear()
		for handle in pending:
			handle.cancel()
		if pending:
			logger.info(f"Node {self.target.name}: cancelled {len(pending)} pending restart(s)")
		return len(pending)

	# ------------------------------------------------------------------
	# Strategies
	# ------------------------------------------------------------------
	def _restart(self) -> None:
		self.target.set_status(NodeStatus.OFFLINE)
		delay_s = self._config.retry_delay_ms / 1000.0
		holder: List[Handle] = []

		def complete() -> None:
			self._complete_restart(holder)

		# Caller holds self._lock, so complete() cannot run before holder is filled.
		handle = self.scheduler.call_later(delay_s, complete)
		holder.append(handle)
		self._pending.append(handle)
		self.target.publish_status()
		logger.debug(f"Node {self.target.name}: restart scheduled in {delay_s:.3f}s")

	def _complete_restart(self, holder: List[Handle]) -> None:
		with self._lock:
			handle = holder[0] if holder else None
			if handle is not None:
				if handle.cancelled:
					return
				if handle in self._pending:
					self._pending.remove(handle)
			self.target.set_status(NodeStatus.ONLINE)
			self._failure_count = 0
			self.target.emit_trace(
				TraceSeverity.INFO,
				"Node restarted successfully",
				{"status": NodeStatus.ONLINE.value},
			)
		self.target.publish_status()
		logger.info(f"Node {self.target.name} restarted")

	def _failover(self) -> None:
		# Reassigning work is cluster-level; the node only reports itself offline.
		self.target.set_status(NodeStatus.OFFLINE)
		self.target.emit_trace(
			TraceSeverity.WARNING,
			"Initiating failover process",
			{"status": NodeStatus.OFFLINE.value},
		)
		self.target.publish_status()

	def _enter_degraded(self) -> None:
		self.target.set_status(NodeStatus.DEGRADED)
		self.target.emit_trace(
			TraceSeverity.WARNING,
			"Entered degraded mode",
			{"status": NodeStatus.DEGRADED.value},
		)
		self.target.publish_status()
