"""
Live Orchestration Manager - owns every active worker.

The manager is the single writer of worker records. Workers report
through the manager's event sink; the manager updates the matching
record and re-broadcasts the event on its EventBus. Admission goes
through the WorkerPool, launches are serialized so pacing holds, and
stop() cancels every active worker with graceful-then-forced semantics.
Each worker keeps the settings snapshot of the run that started it, so
plans with different settings can share one manager.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config import OrchestratorConfig
from ..errors import ConfigurationError, WorkspaceError
from ..plans.models import PlanStep, WorkerKind
from .events import EventBus, EventType, OrchestratorEvent
from .pool import WorkerPool
from .worker import (
	WORKER_TERMINAL,
	StreamingWorker,
	WorkerResult,
	WorkerState,
	build_command,
)
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class WorkerRecord:
	"""Runtime record for one worker, mutated only by the manager."""
	worker_id: str
	step_id: str
	kind: WorkerKind
	plan_id: Optional[str]
	state: WorkerState
	workspace: Optional[Path] = None
	started_at: str = field(default_factory=lambda: datetime.now().isoformat())
	launched_at: float = field(default_factory=time.monotonic)
	finished_at: Optional[float] = None
	pid: Optional[int] = None
	exit_code: Optional[int] = None
	last_output: str = ""
	error: Optional[str] = None
	config: Optional[OrchestratorConfig] = field(default=None, repr=False)
	worker: Optional[StreamingWorker] = field(default=None, repr=False)
	task: Optional[asyncio.Task] = field(default=None, repr=False)

	@property
	def is_active(self) -> bool:
		return self.state not in WORKER_TERMINAL

	@property
	def workspace_key(self) -> str:
		"""Worktree key; step ids repeat across plans, so the plan id is part of it."""
		return f"{self.plan_id}-{self.step_id}" if self.plan_id else self.step_id

	@property
	def elapsed_seconds(self) -> float:
		end = self.finished_at if self.finished_at is not None else time.monotonic()
		return round(end - self.launched_at, 3)

	def to_dict(self) -> dict:
		return {
			"worker_id": self.worker_id,
			"step_id": self.step_id,
			"plan_id": self.plan_id,
			"kind": self.kind.value,
			"state": self.state.value,
			"workspace": str(self.workspace) if self.workspace else None,
			"started_at": self.started_at,
			"elapsed_seconds": self.elapsed_seconds,
			"pid": self.pid,
			"exit_code": self.exit_code,
			"last_output": self.last_output,
			"error": self.error,
		}


class LiveOrchestrationManager:
	"""
	Tracks all workers, fans out one event stream, owns shutdown.

	Typical use from a scheduling loop::

		kind = manager.try_reserve(step)
		if kind is not None:
			record = manager.start_worker(step, kind, instructions)
			result = await record.task
	"""

	def __init__(
		self,
		config: OrchestratorConfig,
		project_path: Path,
		events: Optional[EventBus] = None,
		workspaces: Optional[WorkspaceManager] = None,
		worker_env: Optional[dict[str, str]] = None,
	):
		"""
		Initialize the manager.

		Args:
			config: Orchestration settings snapshot
			project_path: Repository the workers operate on
			events: Bus to publish on (a new one when omitted)
			workspaces: Worktree provider (created lazily when worktrees are enabled)
			worker_env: Extra environment for every worker process
		"""
		self.config = config
		self.project_path = Path(project_path)
		self.events = events or EventBus()
		self.pool = WorkerPool(config)
		self.workspaces = workspaces
		self.worker_env = dict(worker_env or {})

		self._workers: dict[str, WorkerRecord] = {}
		self._lock = asyncio.Lock()
		self._launch_lock = asyncio.Lock()

	# -- configuration -----------------------------------------------------

	@property
	def is_idle(self) -> bool:
		return not self.active_workers() and self.pool.throttle.running_total == 0

	def reconfigure(self, config: OrchestratorConfig) -> None:
		"""Swap in the default settings snapshot. Only allowed while idle."""
		if not self.is_idle:
			raise ConfigurationError("Cannot change configuration while workers are active")
		self.config = config
		self.pool.reconfigure(config)

	def _workspace_manager(self) -> WorkspaceManager:
		if self.workspaces is None:
			self.workspaces = WorkspaceManager(self.project_path)
		return self.workspaces

	# -- events ------------------------------------------------------------

	def publish(self, event: OrchestratorEvent) -> None:
		self.events.publish(event)

	def _on_worker_event(self, event: OrchestratorEvent) -> None:
		"""Sink for worker events: update the record, then broadcast."""
		record = self._workers.get(event.worker_id or "")
		if record is not None:
			if event.type == EventType.WORKER_STATE_CHANGED:
				record.state = WorkerState(event.data["state"])
				if record.worker is not None:
					record.pid = record.worker.pid
			elif event.type == EventType.WORKER_OUTPUT:
				record.last_output = event.message
			elif event.type == EventType.WORKER_COMPLETED:
				record.exit_code = event.data.get("exit_code")
				if not event.data.get("success"):
					record.error = event.message
		self.publish(event)

	# -- dispatch ----------------------------------------------------------

	def try_reserve(self, step: PlanStep, config: Optional[OrchestratorConfig] = None) -> Optional[WorkerKind]:
		"""Admission check for a ready step; reserves a slot when it passes."""
		return self.pool.try_reserve(step, config)

	def release(self, kind: WorkerKind) -> None:
		self.pool.release(kind)

	def start_worker(
		self,
		step: PlanStep,
		kind: WorkerKind,
		instructions: Optional[str] = None,
		plan_id: Optional[str] = None,
		config: Optional[OrchestratorConfig] = None,
	) -> WorkerRecord:
		"""
		Start a worker for a step on a slot reserved with try_reserve().

		The record is registered immediately in the Starting state. A
		background task then provisions the workspace, waits for the launch
		pacing slot and spawns the process. Worker-local failures end up
		in the record and in the result of ``record.task``; the reserved
		slot is released when that task finishes, however it finishes.

		Args:
			step: Step to run
			kind: Reserved worker kind
			instructions: Text handed to the worker (defaults to step instructions)
			plan_id: Owning plan, for event tagging
			config: Settings of the owning run (the manager's settings when omitted)

		Returns:
			WorkerRecord whose ``task`` resolves to a WorkerResult
		"""
		worker_id = f"worker-{uuid.uuid4().hex[:8]}"
		record = WorkerRecord(
			worker_id=worker_id,
			step_id=step.id,
			kind=kind,
			plan_id=plan_id,
			state=WorkerState.STARTING,
			config=config or self.config,
		)
		self._workers[worker_id] = record
		text = instructions if instructions is not None else (step.instructions or step.description)
		record.task = asyncio.create_task(self._run_record(record, text))
		record.task.add_done_callback(lambda task: self._retire(record, cancelled=task.cancelled()))
		return record

	async def _run_record(self, record: WorkerRecord, instructions: str) -> WorkerResult:
		config = record.config or self.config
		try:
			record.workspace = await self._provision(record, config)
		except WorkspaceError as e:
			logger.warning(f"Workspace setup failed for {record.step_id}: {e}")
			return self._fail_before_start(record, str(e))

		worker = StreamingWorker(
			worker_id=record.worker_id,
			step_id=record.step_id,
			kind=record.kind,
			command=build_command(
				config.command_templates[record.kind],
				config.cli_path(record.kind) or "",
				instructions,
			),
			workspace=record.workspace,
			emit=self._on_worker_event,
			streaming=config.streaming,
			env=self.worker_env,
			plan_id=record.plan_id,
		)
		record.worker = worker

		try:
			# The pacing slot covers the actual spawn
			async with self._launch_lock:
				record.launched_at = await self.pool.throttle.wait_for_launch_slot(
					config.throttle_limits.start_delay_ms
				)
				self.publish(OrchestratorEvent(
					type=EventType.WORKER_STARTED,
					message=f"{record.kind.value} worker started for {record.step_id}",
					plan_id=record.plan_id,
					step_id=record.step_id,
					worker_id=record.worker_id,
					data={"kind": record.kind.value},
				))
				logger.info(
					f"Launching {record.worker_id} ({record.kind.value}) for step {record.step_id} in {record.workspace}"
				)
				await worker.start()

			result = await worker.run()
			if result.success and config.use_worktrees:
				result = await self._merge_back(record, result)
		finally:
			if config.use_worktrees:
				await self._workspace_manager().cleanup(record.workspace_key)
		if result.state == WorkerState.FAILED:
			self.publish(OrchestratorEvent(
				type=EventType.ERROR,
				message=result.error or "worker failed",
				plan_id=record.plan_id,
				step_id=record.step_id,
				worker_id=record.worker_id,
			))
		return result

	async def _merge_back(self, record: WorkerRecord, result: WorkerResult) -> WorkerResult:
		"""Merge a successful step's worktree branch; a failed merge fails the step."""
		merged = await self._workspace_manager().merge(
			record.workspace_key,
			f"{record.kind.value}: {record.step_id}",
		)
		if merged["success"]:
			return result
		reason = "conflict" if merged["conflict"] else "error"
		error = f"Merge of {record.step_id} failed ({reason}): {merged['output']}"
		logger.warning(error)
		record.error = error
		self.publish(OrchestratorEvent(
			type=EventType.ERROR,
			message=error,
			plan_id=record.plan_id,
			step_id=record.step_id,
			worker_id=record.worker_id,
		))
		return replace(result, success=False, error=error)

	async def _provision(self, record: WorkerRecord, config: OrchestratorConfig) -> Path:
		if not config.use_worktrees:
			return self.project_path
		return await self._workspace_manager().create(record.workspace_key)

	def _fail_before_start(self, record: WorkerRecord, error: str) -> WorkerResult:
		self._on_worker_event(OrchestratorEvent(
			type=EventType.WORKER_STATE_CHANGED,
			message=error,
			plan_id=record.plan_id,
			step_id=record.step_id,
			worker_id=record.worker_id,
			data={"previous": record.state.value, "state": WorkerState.FAILED.value},
		))
		self.publish(OrchestratorEvent(
			type=EventType.ERROR,
			message=error,
			plan_id=record.plan_id,
			step_id=record.step_id,
			worker_id=record.worker_id,
		))
		self._on_worker_event(OrchestratorEvent(
			type=EventType.WORKER_COMPLETED,
			message=error,
			plan_id=record.plan_id,
			step_id=record.step_id,
			worker_id=record.worker_id,
			data={"success": False, "state": WorkerState.FAILED.value, "exit_code": None},
		))
		return WorkerResult(
			worker_id=record.worker_id,
			state=WorkerState.FAILED,
			success=False,
			error=error,
		)

	def _retire(self, record: WorkerRecord, cancelled: bool = False) -> None:
		"""Release the record's slot exactly once."""
		if record.finished_at is not None:
			return
		record.finished_at = time.monotonic()
		if record.state not in WORKER_TERMINAL:
			record.state = WorkerState.CANCELLED if cancelled else WorkerState.FAILED
		self.pool.release(record.kind)

	# -- queries -----------------------------------------------------------

	def get_worker(self, worker_id: str) -> Optional[WorkerRecord]:
		return self._workers.get(worker_id)

	def active_workers(self) -> list[WorkerRecord]:
		return [r for r in self._workers.values() if r.is_active]

	def status(self) -> dict:
		"""Read-only snapshot of every worker plus aggregate counts."""
		records = [r.to_dict() for r in self._workers.values()]
		by_state: dict[str, int] = {}
		for r in self._workers.values():
			by_state[r.state.value] = by_state.get(r.state.value, 0) + 1
		return {
			"workers": records,
			"active": len(self.active_workers()),
			"by_state": by_state,
			"pool": self.pool.snapshot(),
			"subscribers": self.events.subscriber_count,
			"dropped_events": self.events.dropped_total,
		}

	def forget_finished(self) -> int:
		"""Drop records of finished workers. Returns how many were removed."""
		finished = [wid for wid, r in self._workers.items() if not r.is_active]
		for wid in finished:
			del self._workers[wid]
		return len(finished)

	# -- shutdown ----------------------------------------------------------

	async def stop_workers(
		self,
		force: bool = False,
		plan_id: Optional[str] = None,
	) -> list[str]:
		"""
		Cancel active workers and wait (bounded) for them to exit.

		Args:
			force: Kill immediately instead of SIGTERM-then-SIGKILL
			plan_id: Only stop workers of this plan

		Returns:
			Ids of the workers that were stopped
		"""
		async with self._lock:
			targets = [
				r for r in self._workers.values()
				if r.is_active and (plan_id is None or r.plan_id == plan_id)
			]

		for record in targets:
			logger.info(f"Stopping {record.worker_id} (force={force})")
			if record.worker is None and record.task is not None:
				# Not launched yet
				record.task.cancel()

		cancels = [
			r.worker.cancel(force=force, grace_period=(r.config or self.config).grace_period_s)
			for r in targets if r.worker is not None
		]
		if cancels:
			try:
				await asyncio.wait_for(
					asyncio.gather(*cancels),
					timeout=self.config.shutdown_timeout_s,
				)
			except asyncio.TimeoutError:
				logger.warning(f"Shutdown of {len(cancels)} worker(s) exceeded {self.config.shutdown_timeout_s}s")

		tasks = [r.task for r in targets if r.task is not None]
		if tasks:
			_, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_timeout_s)
			for task in pending:
				task.cancel()
			if pending:
				await asyncio.gather(*pending, return_exceptions=True)
		return [r.worker_id for r in targets]

	async def stop(self, force: bool = False) -> list[str]:
		"""Stop every worker and clean up any remaining worktrees."""
		stopped = await self.stop_workers(force=force)
		if self.workspaces is not None:
			await self.workspaces.cleanup_all()
		return stopped
