"""
Worker Pool - strategy-based worker selection and admission control.

The pool decides which worker kind a ready step should run on and
whether it may start now. Admission requires the global running count
to be under max_workers and the chosen kind's running count to be under
its throttle limit. Launches are paced: any two launches are separated
by at least start_delay_ms regardless of kind.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import OrchestratorConfig, WorkerStrategy
from ..errors import SchedulingInvariantError
from ..plans.models import Complexity, PlanStep, WorkerKind

logger = logging.getLogger(__name__)

TASK_BASED_SIMPLE_INSTRUCTION_LIMIT = 500


@dataclass
class TaskRule:
	"""One entry in the task-based rule table: first matching rule with an enabled kind wins."""
	name: str
	matches: Callable[[PlanStep], bool]
	kinds: list[WorkerKind] = field(default_factory=list)


def _is_simple_step(step: PlanStep) -> bool:
	return (
		step.complexity == Complexity.SIMPLE
		and len(step.relevant_files) <= 1
		and not step.dependencies
		and len(step.instructions) < TASK_BASED_SIMPLE_INSTRUCTION_LIMIT
	)


DEFAULT_TASK_RULES: list[TaskRule] = [
	TaskRule(
		name="simple",
		matches=_is_simple_step,
		kinds=[WorkerKind.COPILOT, WorkerKind.SELF],
	),
	TaskRule(
		name="involved",
		matches=lambda step: step.complexity in (Complexity.MEDIUM, Complexity.COMPLEX),
		kinds=[WorkerKind.CLAUDE, WorkerKind.GEMINI],
	),
]


class ThrottleController:
	"""Running counts per kind plus launch pacing."""

	def __init__(
		self,
		config: OrchestratorConfig,
		clock: Callable[[], float] = time.monotonic,
	):
		self.config = config
		self._clock = clock
		self.running: dict[WorkerKind, int] = {kind: 0 for kind in WorkerKind}
		self._last_launch: Optional[float] = None
		self.launch_times: list[float] = []

	@property
	def running_total(self) -> int:
		return sum(self.running.values())

	def can_admit(self, kind: WorkerKind, config: Optional[OrchestratorConfig] = None) -> bool:
		"""Check the caps of config (the pool settings when omitted) against the shared running counts."""
		config = config or self.config
		if self.running_total >= config.max_workers:
			return False
		return self.running[kind] < config.throttle_limits.limit_for(kind)

	def acquire(self, kind: WorkerKind, config: Optional[OrchestratorConfig] = None) -> None:
		config = config or self.config
		if not self.can_admit(kind, config):
			raise SchedulingInvariantError(
				f"Admission denied for {kind.value}: "
				f"{self.running[kind]}/{config.throttle_limits.limit_for(kind)} of kind, "
				f"{self.running_total}/{config.max_workers} total"
			)
		self.running[kind] += 1

	def release(self, kind: WorkerKind) -> None:
		if self.running[kind] <= 0:
			raise SchedulingInvariantError(f"Release of {kind.value} with nothing running")
		self.running[kind] -= 1

	async def wait_for_launch_slot(self, start_delay_ms: Optional[int] = None) -> float:
		"""
		Sleep until start_delay_ms has passed since the previous launch.

		Callers must serialize launches; the returned timestamp is
		recorded as this launch's time.

		Args:
			start_delay_ms: Gap to enforce (the pool setting when omitted)
		"""
		if start_delay_ms is None:
			start_delay_ms = self.config.throttle_limits.start_delay_ms
		delay = start_delay_ms / 1000
		if self._last_launch is not None and delay > 0:
			remaining = self._last_launch + delay - self._clock()
			if remaining > 0:
				await asyncio.sleep(remaining)
			# Sleep can wake marginally early on some clocks
			while self._clock() < self._last_launch + delay:
				await asyncio.sleep(0.001)
		now = self._clock()
		self._last_launch = now
		self.launch_times.append(now)
		return now


class WorkerPool:
	"""
	Chooses worker kinds for steps and gates their admission.

	Strategies:
		single: always the default worker
		round-robin: cycle through enabled workers, advancing per dispatch
		task-based: first matching rule in the task rule table
		load-balanced: enabled kind with the fewest running workers
	"""

	def __init__(
		self,
		config: OrchestratorConfig,
		task_rules: Optional[list[TaskRule]] = None,
		clock: Callable[[], float] = time.monotonic,
	):
		self.config = config
		self.task_rules = task_rules if task_rules is not None else list(DEFAULT_TASK_RULES)
		self.throttle = ThrottleController(config, clock=clock)
		self._round_robin = 0

	@property
	def enabled(self) -> list[WorkerKind]:
		"""Enabled kinds that have a CLI path, in enumeration order."""
		return [k for k in WorkerKind if self.config.is_enabled(k)]

	def reconfigure(self, config: OrchestratorConfig) -> None:
		"""Replace the default settings. Runs with their own snapshot pass it per call instead."""
		if self.throttle.running_total:
			raise SchedulingInvariantError("Cannot reconfigure the pool while workers are running")
		self.config = config
		self.throttle.config = config
		self._round_robin = 0

	def select_kind(self, step: PlanStep, config: Optional[OrchestratorConfig] = None) -> WorkerKind:
		"""Pick a worker kind for a step without reserving it."""
		config = config or self.config
		strategy = config.worker_strategy
		if strategy == WorkerStrategy.ROUND_ROBIN:
			order = [k for k in config.enabled_workers if config.is_enabled(k)]
			if not order:
				return config.default_worker
			return order[self._round_robin % len(order)]
		if strategy == WorkerStrategy.TASK_BASED:
			return self._select_task_based(step, config)
		if strategy == WorkerStrategy.LOAD_BALANCED:
			enabled = [k for k in WorkerKind if config.is_enabled(k)]
			if not enabled:
				return config.default_worker
			return min(enabled, key=lambda k: self.throttle.running[k])
		return config.default_worker

	def _select_task_based(self, step: PlanStep, config: OrchestratorConfig) -> WorkerKind:
		if step.preferred_worker is not None and config.is_enabled(step.preferred_worker):
			return step.preferred_worker
		for rule in self.task_rules:
			if not rule.matches(step):
				continue
			for kind in rule.kinds:
				if config.is_enabled(kind):
					logger.debug(f"Step {step.id} matched rule '{rule.name}' -> {kind.value}")
					return kind
		return config.default_worker

	def try_reserve(self, step: PlanStep, config: Optional[OrchestratorConfig] = None) -> Optional[WorkerKind]:
		"""
		Reserve a worker slot for a step if admission allows it.

		Args:
			step: Ready step
			config: Settings of the run the step belongs to (pool settings when omitted)

		Returns:
			The reserved kind, or None if the step must wait
		"""
		config = config or self.config
		kind = self.select_kind(step, config)
		if not self.throttle.can_admit(kind, config):
			return None
		self.throttle.acquire(kind, config)
		if config.worker_strategy == WorkerStrategy.ROUND_ROBIN:
			self._round_robin += 1
		return kind

	def release(self, kind: WorkerKind) -> None:
		self.throttle.release(kind)

	def snapshot(self) -> dict:
		return {
			"strategy": self.config.worker_strategy.value,
			"max_workers": self.config.max_workers,
			"running_total": self.throttle.running_total,
			"running_by_kind": {k.value: v for k, v in self.throttle.running.items() if v},
			"limits": {
				k.value: self.config.throttle_limits.limit_for(k) for k in self.enabled
			},
			"start_delay_ms": self.config.throttle_limits.start_delay_ms,
		}
