"""
Plan executor contract and the shared dependency-driven scheduling loop.

Every execution mode drives a plan the same way: start only steps whose
dependencies completed, cascade Skipped to everything downstream of a
failure, and move the plan to its terminal state exactly once. Modes
differ only in how a single step is admitted and run.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Optional

from ...config import OrchestratorConfig
from ...errors import PlanStateError
from ...plans.models import (
	ExecutionMode,
	PlanStatus,
	PlanStep,
	StepResult,
	StepStatus,
	TaskPlan,
)
from ..events import EventBus, EventType, OrchestratorEvent

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by stop request"


@dataclass
class ExecutionContext:
	"""Everything an executor needs for one plan run."""
	plan: TaskPlan
	config: OrchestratorConfig
	events: EventBus
	project_path: Path = field(default_factory=Path.cwd)
	cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
	force_cancel: bool = False
	tasks: dict[asyncio.Task, str] = field(default_factory=dict, repr=False)

	@property
	def cancelled(self) -> bool:
		return self.cancel_event.is_set()

	def emit(self, event_type: EventType, message: str = "", step_id: Optional[str] = None, **data) -> None:
		self.events.publish(OrchestratorEvent(
			type=event_type,
			message=message,
			plan_id=self.plan.id,
			step_id=step_id,
			data=data,
		))

	def report_progress(self, step_id: str, message: str) -> None:
		"""Publish a progress note for a running step."""
		self.emit(EventType.STEP_PROGRESS, message, step_id=step_id)


class PlanExecutor(ABC):
	"""
	Drives a TaskPlan to a terminal state.

	Subclasses implement run_step() and may override admit() for
	admission control beyond the per-executor concurrency limit.
	"""

	name: str = "executor"
	mode: ExecutionMode
	supports_parallel: bool = False

	def __init__(self) -> None:
		self._contexts: dict[str, ExecutionContext] = {}

	def max_concurrency(self, ctx: ExecutionContext) -> int:
		return 1

	async def prepare(self, ctx: ExecutionContext) -> None:
		"""Hook run before the first step starts."""

	async def finalize(self, ctx: ExecutionContext) -> None:
		"""Hook run after the last step finished, even on errors."""

	@abstractmethod
	async def run_step(self, step: PlanStep, ctx: ExecutionContext) -> StepResult:
		"""Execute one step. Only called once its dependencies completed."""

	def admit(self, step: PlanStep, ctx: ExecutionContext, running: int) -> Optional[Awaitable[StepResult]]:
		"""
		Decide whether a ready step may start now.

		Returns:
			Awaitable producing the step's result, or None to leave the
			step ready for the next scheduling pass
		"""
		if running >= self.max_concurrency(ctx):
			return None
		ctx.plan.start_step(step.id)
		return self.run_step(step, ctx)

	async def cancel(self, plan_id: str, force: bool = False) -> bool:
		"""Ask a running plan to stop. Returns False if the plan is not running here."""
		ctx = self._contexts.get(plan_id)
		if ctx is None:
			return False
		ctx.force_cancel = ctx.force_cancel or force
		ctx.cancel_event.set()
		if force:
			for task in list(ctx.tasks):
				task.cancel()
		return True

	async def execute(self, ctx: ExecutionContext) -> TaskPlan:
		"""
		Run an approved plan to completion.

		Returns:
			The plan, in Completed or Failed state
		"""
		plan = ctx.plan
		if plan.status != PlanStatus.APPROVED:
			raise PlanStateError(f"Plan {plan.id} must be approved before execution (is {plan.status.value})")

		plan.start()
		self._contexts[plan.id] = ctx
		ctx.emit(EventType.PLAN_STARTED, f"Executing {len(plan.steps)} step(s) in {self.mode.value} mode")
		logger.info(f"{self.name}: starting plan {plan.id} with {len(plan.steps)} steps")

		running = ctx.tasks
		aborted: Optional[str] = None
		try:
			await self.prepare(ctx)
			while True:
				if not ctx.cancelled:
					self._dispatch_ready(ctx, running)

				if not running:
					if ctx.cancelled or not plan.ready_steps():
						break
					# Ready but not admitted: wait for capacity elsewhere to free up
					await self._wait_for_tick(ctx)
					continue

				done, _ = await asyncio.wait(
					set(running),
					timeout=ctx.config.schedule_tick_s,
					return_when=asyncio.FIRST_COMPLETED,
				)
				for task in done:
					step_id = running.pop(task)
					self._record(ctx, step_id, self._result_of(task, step_id))
		except asyncio.CancelledError:
			aborted = CANCELLED_MESSAGE
			raise
		except Exception as e:
			aborted = f"Plan aborted: {type(e).__name__}: {e}"
			logger.error(f"{self.name}: plan {plan.id} aborted: {e}")
			raise
		finally:
			for task in running:
				task.cancel()
			if running:
				await asyncio.gather(*running, return_exceptions=True)
				for task, step_id in list(running.items()):
					self._record(ctx, step_id, self._result_of(task, step_id, aborted or CANCELLED_MESSAGE))
				running.clear()
			try:
				await self.finalize(ctx)
			finally:
				self._contexts.pop(plan.id, None)
				if aborted is not None:
					self._finish(ctx, aborted)

		self._finish(ctx, CANCELLED_MESSAGE if ctx.cancelled else None)
		return plan

	def _finish(self, ctx: ExecutionContext, skip_reason: Optional[str]) -> None:
		"""Skip what never ran and move the plan to its terminal state."""
		plan = ctx.plan
		if skip_reason is not None:
			for step in plan.skip_pending(skip_reason):
				ctx.emit(EventType.STEP_SKIPPED, step.error or "", step_id=step.id)
		status = plan.finish()
		ctx.emit(EventType.PLAN_COMPLETED, plan.summary, status=status.value, **plan.progress())
		logger.info(f"{self.name}: plan {plan.id} {status.value} - {plan.summary}")

	def _dispatch_ready(self, ctx: ExecutionContext, running: dict[asyncio.Task, str]) -> None:
		for step in ctx.plan.ready_steps():
			awaitable = self.admit(step, ctx, len(running))
			if awaitable is None:
				continue
			ctx.emit(EventType.STEP_STARTED, step.active_description, step_id=step.id)
			task = asyncio.create_task(self._timed(awaitable))
			running[task] = step.id

	async def _timed(self, awaitable: Awaitable[StepResult]) -> StepResult:
		started = time.monotonic()
		result = await awaitable
		if not result.duration_ms:
			result.duration_ms = int((time.monotonic() - started) * 1000)
		return result

	async def _wait_for_tick(self, ctx: ExecutionContext) -> None:
		try:
			await asyncio.wait_for(ctx.cancel_event.wait(), timeout=ctx.config.schedule_tick_s)
		except asyncio.TimeoutError:
			pass

	def _result_of(self, task: asyncio.Task, step_id: str, cancelled_error: str = CANCELLED_MESSAGE) -> StepResult:
		"""Convert a finished step task into a result; step-local failures never escape."""
		if task.cancelled():
			return StepResult(success=False, error=cancelled_error)
		exc = task.exception()
		if exc is not None:
			logger.warning(f"Step {step_id} raised: {exc}")
			return StepResult(success=False, error=f"{type(exc).__name__}: {exc}")
		return task.result()

	def _record(self, ctx: ExecutionContext, step_id: str, result: StepResult) -> None:
		plan = ctx.plan
		step = plan.record_result(step_id, result)
		ctx.emit(
			EventType.STEP_COMPLETED,
			step.error or "completed",
			step_id=step_id,
			success=result.success,
			duration_ms=result.duration_ms,
		)
		if step.status == StepStatus.FAILED:
			for skipped in plan.skip_dependents(step_id):
				ctx.emit(EventType.STEP_SKIPPED, skipped.error or "", step_id=skipped.id)
