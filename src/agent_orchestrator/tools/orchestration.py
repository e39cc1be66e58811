"""Orchestration tools - plan, execute, inspect and stop multi-worker runs."""

import json
import logging
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..errors import AgentOrchestratorError
from ..plans.models import TaskPlan
from ..service import OrchestrationService, get_service

logger = logging.getLogger(__name__)


def _split(value: str) -> list[str]:
	return [v.strip() for v in value.split(",") if v.strip()]


def _plan_payload(plan: TaskPlan) -> dict:
	return {
		"plan_id": plan.id,
		"title": plan.title,
		"mode": plan.mode.value,
		"status": plan.status.value,
		"summary": plan.summary,
		"progress": plan.progress(),
		"steps": [
			{
				"id": s.id,
				"description": s.description,
				"status": s.status.value,
				"dependencies": s.dependencies,
				"preferred_worker": s.preferred_worker.value if s.preferred_worker else None,
				"complexity": s.complexity.value,
				"complexity_score": s.complexity_score,
				"error": s.error,
			}
			for s in plan.steps
		],
		"markdown": plan.to_markdown(),
	}


def _error(e: AgentOrchestratorError) -> str:
	logger.warning(f"Orchestration tool failed: {type(e).__name__}: {e}")
	return json.dumps({"success": False, "error": str(e), "error_type": type(e).__name__})


def register_orchestration_tools(
	mcp: FastMCP,
	config: Config,
	service: Optional[OrchestrationService] = None,
) -> None:
	"""Register the orchestrator_* tools over one OrchestrationService."""
	holder: dict[str, OrchestrationService] = {}
	if service is not None:
		holder["service"] = service

	def _service() -> OrchestrationService:
		if "service" not in holder:
			holder["service"] = get_service(config)
		return holder["service"]

	@mcp.tool()
	async def orchestrator_configure(
		max_instances: int = 0,
		strategy: str = "",
		start_delay_ms: int = -1,
		workers: str = "",
		auto_roles: Optional[bool] = None,
		hierarchical: Optional[bool] = None,
		save_config: bool = False,
	) -> str:
		"""
		Update orchestration settings.

		Args:
			max_instances: Maximum concurrent workers (0 = unchanged)
			strategy: single, round-robin, task-based or load-balanced
			start_delay_ms: Minimum gap between worker launches (-1 = unchanged)
			workers: Comma-separated enabled workers (claude, gemini, self, copilot)
			auto_roles: Let the planner suggest a worker per step
			hierarchical: Allow one extra level of nested orchestration
			save_config: Persist the settings to config.toml
		"""
		options: dict[str, Any] = {}
		if max_instances:
			options["max_instances"] = max_instances
		if strategy:
			options["strategy"] = strategy
		if start_delay_ms >= 0:
			options["start_delay_ms"] = start_delay_ms
		if workers:
			options["enabled_workers"] = _split(workers)
		if auto_roles is not None:
			options["auto_roles"] = auto_roles
		if hierarchical is not None:
			options["hierarchical"] = hierarchical
		if save_config:
			options["save_config"] = True

		try:
			updated = _service().configure(options)
		except AgentOrchestratorError as e:
			return _error(e)
		return json.dumps({"success": True, "config": updated.to_dict()}, indent=2)

	@mcp.tool()
	async def orchestrator_plan(request: str, execution_mode: str = "") -> str:
		"""
		Break a request into a dependency-ordered plan without running it.

		The plan waits for approval; run it with orchestrator_approve.

		Args:
			request: What needs to be done
			execution_mode: direct, subagent or orchestration (default: configured)
		"""
		overrides: dict[str, Any] = {}
		if execution_mode:
			overrides["execution_mode"] = execution_mode
		try:
			plan = await _service().create_plan(request, overrides)
		except AgentOrchestratorError as e:
			return _error(e)
		return json.dumps({"success": True, **_plan_payload(plan)}, indent=2)

	@mcp.tool()
	async def orchestrator_approve(plan_id: str, approve: bool = True, reason: str = "") -> str:
		"""
		Approve (and run) or reject a plan awaiting approval.

		Args:
			plan_id: Plan returned by orchestrator_plan or orchestrator_execute in plan mode
			approve: False rejects the plan
			reason: Rejection reason
		"""
		try:
			if approve:
				plan = await _service().approve(plan_id)
			else:
				plan = _service().reject(plan_id, reason)
		except AgentOrchestratorError as e:
			return _error(e)
		return json.dumps({"success": True, **_plan_payload(plan)}, indent=2)

	@mcp.tool()
	async def orchestrator_execute(
		request: str,
		mode: str = "act",
		instances: int = 0,
		workers: str = "",
		execution_mode: str = "",
	) -> str:
		"""
		Plan a request and run it across workers.

		Args:
			request: What needs to be done
			mode: 'act' runs immediately, 'plan' stops at approval
			instances: Maximum concurrent workers for this run (0 = configured)
			workers: Comma-separated workers to force for this run
			execution_mode: direct, subagent or orchestration (default: configured)
		"""
		overrides: dict[str, Any] = {"mode": mode}
		if instances:
			overrides["instances"] = instances
		if workers:
			overrides["workers"] = _split(workers)
		if execution_mode:
			overrides["execution_mode"] = execution_mode
		try:
			plan = await _service().execute(request, overrides)
		except AgentOrchestratorError as e:
			return _error(e)
		return json.dumps({"success": True, **_plan_payload(plan)}, indent=2)

	@mcp.tool()
	async def orchestrator_status() -> str:
		"""Current settings, plans and worker records."""
		return json.dumps({"success": True, **_service().status()}, indent=2, default=str)

	@mcp.tool()
	async def orchestrator_stop(force: bool = False) -> str:
		"""
		Stop all running plans and workers.

		Args:
			force: Kill workers immediately instead of terminating gracefully
		"""
		result = await _service().stop(force=force)
		return json.dumps({"success": True, **result}, indent=2)
