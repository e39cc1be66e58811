"""Orchestration executor - steps run as external CLI workers through the live manager."""

import logging
from typing import Awaitable, Optional

from ...errors import SchedulingInvariantError
from ...plans.models import ExecutionMode, PlanStep, StepResult
from ..manager import LiveOrchestrationManager, WorkerRecord
from ..worker import WorkerState
from .base import CANCELLED_MESSAGE, ExecutionContext, PlanExecutor

logger = logging.getLogger(__name__)


class OrchestrationExecutor(PlanExecutor):
	"""
	Hands ready steps to the worker pool.

	Admission (global cap, per-kind cap) is decided by the manager's pool
	each scheduling pass, using the run's own settings against the shared
	running counts; a blocked step stays ready and is retried when
	a worker finishes or on the next tick.
	"""

	name = "orchestration"
	mode = ExecutionMode.ORCHESTRATION
	supports_parallel = True

	def __init__(self, manager: LiveOrchestrationManager):
		super().__init__()
		self.manager = manager

	def max_concurrency(self, ctx: ExecutionContext) -> int:
		return ctx.config.max_workers

	def admit(self, step: PlanStep, ctx: ExecutionContext, running: int) -> Optional[Awaitable[StepResult]]:
		kind = self.manager.try_reserve(step, ctx.config)
		if kind is None:
			return None
		try:
			ctx.plan.start_step(step.id)
		except SchedulingInvariantError:
			self.manager.release(kind)
			raise
		record = self.manager.start_worker(
			step,
			kind,
			instructions=ctx.plan.instructions_with_plan_context(step),
			plan_id=ctx.plan.id,
			config=ctx.config,
		)
		return self._await_worker(step, record)

	async def run_step(self, step: PlanStep, ctx: ExecutionContext) -> StepResult:
		kind = self.manager.try_reserve(step, ctx.config)
		if kind is None:
			return StepResult(success=False, error="No worker capacity available")
		record = self.manager.start_worker(step, kind, plan_id=ctx.plan.id, config=ctx.config)
		return await self._await_worker(step, record)

	async def _await_worker(self, step: PlanStep, record: WorkerRecord) -> StepResult:
		result = await record.task
		error = result.error
		if result.state == WorkerState.CANCELLED:
			logger.info(f"Step {step.id} cancelled on {record.worker_id}")
			error = CANCELLED_MESSAGE
		return StepResult(
			success=result.success,
			output=result.output,
			error=error,
			duration_ms=result.duration_ms,
		)

	async def cancel(self, plan_id: str, force: bool = False) -> bool:
		found = await super().cancel(plan_id, force=False)
		stopped = await self.manager.stop_workers(force=force, plan_id=plan_id)
		return found or bool(stopped)

	async def finalize(self, ctx: ExecutionContext) -> None:
		leftover = [r for r in self.manager.active_workers() if r.plan_id == ctx.plan.id]
		if leftover:
			logger.warning(f"Plan {ctx.plan.id} finished with {len(leftover)} active worker(s); stopping them")
			await self.manager.stop_workers(force=True, plan_id=ctx.plan.id)
