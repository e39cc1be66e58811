"""
Orchestration Service - the surface other components call.

Wraps planner, executors and the live manager behind four operations:
configure(), execute(), status() and stop(), plus approval of plans
created in plan mode. The MCP tools and the CLI are thin layers over
this class.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

from .config import DEPTH_ENV, Config, OrchestratorConfig, WorkerStrategy, get_config, save_orchestrator_config
from .errors import ConfigurationError, PlanStateError
from .orchestrator.events import EventBus, EventType, OrchestratorEvent, Subscription
from .orchestrator.executors import ExecutionContext, PlanExecutor, create_default_registry
from .orchestrator.executors.direct import StepHandler
from .orchestrator.executors.subagent import SubagentHandler
from .orchestrator.manager import LiveOrchestrationManager
from .orchestrator.planner import Planner
from .plans.models import ExecutionMode, PlanStatus, TaskPlan, WorkerKind

logger = logging.getLogger(__name__)

CONFIGURE_OPTIONS = {
	"max_instances",
	"auto_roles",
	"hierarchical",
	"strategy",
	"start_delay_ms",
	"save_config",
	"enabled_workers",
	"default_worker",
	"execution_mode",
	"use_worktrees",
}

APPROVAL_MODES = ("plan", "act")


def _depth_from_env() -> int:
	raw = os.getenv(DEPTH_ENV, "").strip()
	if not raw:
		return 0
	try:
		return max(int(raw), 0)
	except ValueError as e:
		raise ConfigurationError(f"{DEPTH_ENV} must be an integer (got {raw!r})") from e


def _as_kinds(value: Any) -> list[WorkerKind]:
	if isinstance(value, (str, WorkerKind)):
		value = [value]
	kinds: list[WorkerKind] = []
	for item in value:
		if isinstance(item, str):
			item = item.strip()
			if not item:
				continue
		try:
			kind = WorkerKind(item)
		except ValueError as e:
			valid = ", ".join(k.value for k in WorkerKind)
			raise ConfigurationError(f"Unknown worker '{item}'. Valid options: {valid}") from e
		if kind not in kinds:
			kinds.append(kind)
	return kinds


class OrchestrationService:
	"""
	Plans requests and runs them through the executor for their mode.

	The service owns the event bus, the live manager and the orchestration
	depth. A service started inside a worker inherits its depth from
	AGENT_ORCHESTRATOR_DEPTH; workers it launches get depth + 1.
	"""

	def __init__(
		self,
		config: Optional[OrchestratorConfig] = None,
		project_path: Optional[Path] = None,
		app_config: Optional[Config] = None,
		planner: Optional[Planner] = None,
		events: Optional[EventBus] = None,
		depth: Optional[int] = None,
		direct_handler: Optional[StepHandler] = None,
		subagent_handler: Optional[SubagentHandler] = None,
	):
		"""
		Initialize the service.

		Args:
			config: Orchestration settings (loaded from config.toml when omitted)
			project_path: Repository to operate on (defaults to the app config's)
			app_config: Application paths, used for loading and saving settings
			planner: Plan builder (heuristic planner when omitted)
			events: Event bus shared with the manager and executors
			depth: Orchestration depth (read from the environment when omitted)
			direct_handler: Step handler for direct mode
			subagent_handler: Step handler for subagent mode
		"""
		self.app_config = app_config
		if config is None:
			config = OrchestratorConfig.load(self._app_config())
		self.config = config.validate()
		if project_path is None:
			project_path = self._app_config().project_path
		self.project_path = Path(project_path)
		self.planner = planner or Planner()
		self.events = events or EventBus()
		self.depth = _depth_from_env() if depth is None else depth

		self.manager = LiveOrchestrationManager(
			self.config,
			self.project_path,
			events=self.events,
			worker_env={DEPTH_ENV: str(self.depth + 1)},
		)
		self.registry = create_default_registry(
			self.manager,
			direct_handler=direct_handler,
			subagent_handler=subagent_handler,
		)

		self.plans: dict[str, TaskPlan] = {}
		self._pending: dict[str, OrchestratorConfig] = {}
		self._runs: dict[str, PlanExecutor] = {}

	def _app_config(self) -> Config:
		if self.app_config is None:
			self.app_config = get_config()
		return self.app_config

	def _emit(self, event_type: EventType, plan: TaskPlan, message: str = "", **data) -> None:
		self.events.publish(OrchestratorEvent(
			type=event_type,
			message=message,
			plan_id=plan.id,
			data=data,
		))

	def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
		"""Subscribe to every event the service, executors and workers publish."""
		return self.events.subscribe(maxsize)

	# -- configure ---------------------------------------------------------

	def configure(self, options: dict[str, Any]) -> OrchestratorConfig:
		"""
		Update orchestration settings.

		Args:
			options: max_instances, auto_roles, hierarchical, strategy,
				start_delay_ms, enabled_workers, default_worker,
				execution_mode, use_worktrees, save_config

		Returns:
			The new settings snapshot

		Raises:
			ConfigurationError: On unknown options or an invalid result
		"""
		unknown = sorted(set(options) - CONFIGURE_OPTIONS)
		if unknown:
			raise ConfigurationError(f"Unknown configuration option(s): {', '.join(unknown)}")

		changes = {k: v for k, v in options.items() if k != "save_config"}
		if "enabled_workers" in changes:
			kinds = _as_kinds(changes["enabled_workers"])
			changes["enabled_workers"] = [k.value for k in kinds]
			if "default_worker" not in changes and kinds and self.config.default_worker not in kinds:
				changes["default_worker"] = kinds[0].value

		config = OrchestratorConfig.from_dict(changes, base=self.config).validate()
		self.config = config
		# Running plans keep their own snapshot
		if self.manager.is_idle:
			self.manager.reconfigure(config)
		logger.info(f"Orchestrator configured: {', '.join(sorted(changes)) or 'no changes'}")

		if options.get("save_config"):
			path = save_orchestrator_config(config, self._app_config())
			logger.info(f"Saved orchestrator settings to {path}")
		return config

	def _run_config(self, overrides: dict[str, Any]) -> OrchestratorConfig:
		"""Settings snapshot for one run: current settings plus execute overrides."""
		config = self.config
		changes: dict[str, Any] = {}

		instances = overrides.pop("instances", None)
		if instances is not None:
			changes["max_workers"] = instances

		roles = overrides.pop("workers", None)
		if roles is None:
			roles = overrides.pop("roles", None)
		if roles:
			kinds = _as_kinds(roles)
			if not kinds:
				raise ConfigurationError("No workers given to force for this run")
			changes["enabled_workers"] = [k.value for k in kinds]
			changes["default_worker"] = kinds[0].value
			if len(kinds) > 1 and config.worker_strategy == WorkerStrategy.SINGLE:
				changes["worker_strategy"] = WorkerStrategy.ROUND_ROBIN.value

		for key in ("execution_mode", "strategy", "auto_roles", "use_worktrees"):
			if key in overrides:
				changes[key] = overrides.pop(key)

		if overrides:
			raise ConfigurationError(f"Unknown execute option(s): {', '.join(sorted(overrides))}")
		if not changes:
			return config
		return OrchestratorConfig.from_dict(changes, base=config).validate()

	# -- execute -----------------------------------------------------------

	async def create_plan(self, request: str, overrides: Optional[dict[str, Any]] = None) -> TaskPlan:
		"""Plan a request without running it; the plan waits for approval."""
		overrides = dict(overrides or {})
		overrides["mode"] = "plan"
		return await self.execute(request, overrides)

	async def execute(self, request: str, overrides: Optional[dict[str, Any]] = None) -> TaskPlan:
		"""
		Plan a request and, in act mode, run it.

		Args:
			request: Natural-language request
			overrides: instances, workers (forced roles), mode (plan|act),
				execution_mode, strategy, auto_roles, use_worktrees

		Returns:
			The plan: awaiting approval in plan mode, terminal in act mode
		"""
		overrides = dict(overrides or {})
		approval = str(overrides.pop("mode", "act")).lower()
		if approval not in APPROVAL_MODES:
			raise ConfigurationError(f"mode must be one of {', '.join(APPROVAL_MODES)} (got {approval})")
		run_config = self._run_config(overrides)

		plan = await self.planner.create_plan(request, run_config.execution_mode)
		if not run_config.auto_roles:
			for step in plan.steps:
				step.preferred_worker = None

		self.plans[plan.id] = plan
		self._emit(EventType.PLAN_CREATED, plan, plan.description, steps=len(plan.steps))
		plan.submit_for_approval()
		self._emit(EventType.PLAN_AWAITING_APPROVAL, plan, plan.title)

		if approval == "plan":
			self._pending[plan.id] = run_config
			logger.info(f"Plan {plan.id} awaiting approval ({len(plan.steps)} steps)")
			return plan
		return await self._approve_and_run(plan, run_config)

	def pending_plans(self) -> list[TaskPlan]:
		return [self.plans[pid] for pid in self._pending]

	def _awaiting(self, plan_id: str) -> TaskPlan:
		plan = self.plans.get(plan_id)
		if plan is None:
			raise PlanStateError(f"Unknown plan: {plan_id}")
		if plan.status != PlanStatus.AWAITING_APPROVAL:
			raise PlanStateError(f"Plan {plan_id} is {plan.status.value}, not awaiting approval")
		return plan

	async def approve(self, plan_id: str) -> TaskPlan:
		"""Approve a plan created in plan mode and run it."""
		plan = self._awaiting(plan_id)
		run_config = self._pending.get(plan_id, self.config)
		return await self._approve_and_run(plan, run_config)

	def reject(self, plan_id: str, reason: str = "") -> TaskPlan:
		plan = self._awaiting(plan_id)
		plan.reject(reason)
		self._pending.pop(plan_id, None)
		self._emit(EventType.PLAN_REJECTED, plan, reason)
		logger.info(f"Plan {plan_id} rejected{': ' + reason if reason else ''}")
		return plan

	def _check_depth(self, config: OrchestratorConfig) -> None:
		if self.depth >= config.max_depth:
			raise ConfigurationError(
				f"Recursive orchestration blocked: depth {self.depth} reaches the maximum ({config.max_depth})"
			)

	async def _approve_and_run(self, plan: TaskPlan, run_config: OrchestratorConfig) -> TaskPlan:
		if plan.mode == ExecutionMode.ORCHESTRATION:
			self._check_depth(run_config)
		executor = self.registry.get(plan.mode)

		plan.approve()
		self._pending.pop(plan.id, None)
		self._emit(EventType.PLAN_APPROVED, plan)

		ctx = ExecutionContext(
			plan=plan,
			config=run_config,
			events=self.events,
			project_path=self.project_path,
		)
		self._runs[plan.id] = executor
		try:
			return await executor.execute(ctx)
		finally:
			self._runs.pop(plan.id, None)

	# -- status / stop -----------------------------------------------------

	def get_plan(self, plan_id: str) -> Optional[TaskPlan]:
		return self.plans.get(plan_id)

	def status(self) -> dict:
		"""Snapshot of settings, plans and workers."""
		return {
			"depth": self.depth,
			"max_depth": self.config.max_depth,
			"config": self.config.to_dict(),
			"running_plans": list(self._runs),
			"pending_approval": list(self._pending),
			"plans": [
				{
					"id": plan.id,
					"title": plan.title,
					"mode": plan.mode.value,
					"status": plan.status.value,
					"progress": plan.progress(),
				}
				for plan in self.plans.values()
			],
			**self.manager.status(),
		}

	async def stop(self, force: bool = False) -> dict:
		"""
		Cancel every running plan and stop all workers.

		Running steps end Failed, pending steps end Skipped, and each
		cancelled plan ends Failed.
		"""
		active = [r.worker_id for r in self.manager.active_workers()]
		cancelled = []
		for plan_id, executor in list(self._runs.items()):
			if await executor.cancel(plan_id, force=force):
				cancelled.append(plan_id)
		stopped = await self.manager.stop(force=force)
		stopped = active + [w for w in stopped if w not in active]
		logger.info(f"Stop requested (force={force}): {len(cancelled)} plan(s), {len(stopped)} worker(s)")
		return {"cancelled_plans": cancelled, "stopped_workers": stopped}


# Global service instance
_service: Optional[OrchestrationService] = None


def get_service(app_config: Optional[Config] = None) -> OrchestrationService:
	"""Get or create the global orchestration service."""
	global _service
	if _service is None:
		_service = OrchestrationService(app_config=app_config)
	return _service
