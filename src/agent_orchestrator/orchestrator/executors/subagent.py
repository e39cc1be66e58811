"""Subagent executor - independent steps run concurrently as in-process specialized agents."""

import json
import logging
from typing import Awaitable, Callable, Optional

from ...analyzer import subagent_kind_for
from ...plans.models import ExecutionMode, PlanStep, StepResult, SubagentKind
from .base import ExecutionContext, PlanExecutor
from .direct import generate_execution_prompt

logger = logging.getLogger(__name__)

SubagentHandler = Callable[[PlanStep, SubagentKind, ExecutionContext], Awaitable[StepResult]]

SUBAGENT_PROFILES: dict[SubagentKind, dict] = {
	SubagentKind.ANALYZER: {
		"purpose": "Read-only code analysis",
		"tools": ["glob", "grep", "read_file"],
	},
	SubagentKind.TESTER: {
		"purpose": "Create and run tests",
		"tools": ["read_file", "write_file", "edit_file", "bash"],
	},
	SubagentKind.REFACTORER: {
		"purpose": "Improve code structure without changing behavior",
		"tools": ["read_file", "edit_file", "bash"],
	},
	SubagentKind.DOCUMENTER: {
		"purpose": "Write and update documentation",
		"tools": ["read_file", "write_file", "edit_file"],
	},
	SubagentKind.CUSTOM: {
		"purpose": "General-purpose step execution",
		"tools": ["read_file", "write_file", "edit_file", "glob", "grep", "bash"],
	},
}


def generate_subagent_config(step: PlanStep, kind: SubagentKind, ctx: ExecutionContext) -> dict:
	"""Brief for a specialized subagent: its role, allowed tools and prompt."""
	profile = SUBAGENT_PROFILES[kind]
	return {
		"plan_id": ctx.plan.id,
		"step_id": step.id,
		"agent": kind.value,
		"purpose": profile["purpose"],
		"tools": list(profile["tools"]),
		"prompt": generate_execution_prompt(step, ctx),
	}


async def brief_handler(step: PlanStep, kind: SubagentKind, ctx: ExecutionContext) -> StepResult:
	"""Default handler: produce the subagent brief as the step's output."""
	return StepResult(success=True, output=json.dumps(generate_subagent_config(step, kind, ctx), indent=2))


class SubagentExecutor(PlanExecutor):
	"""Concurrent in-process agents, bounded by subagent_concurrency."""

	name = "subagent"
	mode = ExecutionMode.SUBAGENT
	supports_parallel = True

	def __init__(self, handler: Optional[SubagentHandler] = None, max_concurrent: Optional[int] = None):
		super().__init__()
		self.handler = handler or brief_handler
		self._max_concurrent = max_concurrent

	def max_concurrency(self, ctx: ExecutionContext) -> int:
		return self._max_concurrent or ctx.config.subagent_concurrency

	async def run_step(self, step: PlanStep, ctx: ExecutionContext) -> StepResult:
		kind = subagent_kind_for(step)
		logger.info(f"Subagent {kind.value} taking step {step.id}")
		ctx.report_progress(step.id, f"{kind.value} agent: {step.active_description}")
		return await self.handler(step, kind, ctx)
