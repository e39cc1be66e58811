"""Direct executor - steps run one at a time in the current session."""

import logging
from typing import Awaitable, Callable, Optional

from ...plans.models import Complexity, ExecutionMode, PlanStep, StepResult
from .base import ExecutionContext, PlanExecutor

logger = logging.getLogger(__name__)

StepHandler = Callable[[PlanStep, ExecutionContext], Awaitable[StepResult]]


def generate_execution_prompt(step: PlanStep, ctx: ExecutionContext) -> str:
	"""
	Build the prompt the hosting session uses to carry out a step.

	The direct executor does not edit code itself; it hands each step to
	the session that owns it, in dependency order.
	"""
	prompt_parts = [
		f"# Step {step.id}: {step.description}",
		"",
	]

	if step.instructions:
		prompt_parts.extend([
			"## Instructions",
			step.instructions,
			"",
		])

	if step.relevant_files:
		prompt_parts.extend([
			"## Relevant Files",
			*[f"- {path}" for path in step.relevant_files],
			"",
		])

	if step.complexity == Complexity.COMPLEX:
		prompt_parts.extend([
			"## Approach",
			"This is a complex step. Plan the change first, then work through it methodically",
			"and review the result before reporting back.",
			"",
		])
	elif step.complexity == Complexity.MEDIUM:
		prompt_parts.extend([
			"## Approach",
			"Work through the change in order and verify each part before moving on.",
			"",
		])
	else:
		prompt_parts.extend([
			"## Approach",
			"This is a straightforward step. Execute directly.",
			"",
		])

	prompt_parts.extend([
		"## Context",
		f"Part of plan {ctx.plan.id}: {ctx.plan.request}",
	])

	return "\n".join(prompt_parts)


async def prompt_handler(step: PlanStep, ctx: ExecutionContext) -> StepResult:
	"""Default handler: produce the execution prompt as the step's output."""
	return StepResult(success=True, output=generate_execution_prompt(step, ctx))


class DirectExecutor(PlanExecutor):
	"""Sequential, in-process execution. No child processes."""

	name = "direct"
	mode = ExecutionMode.DIRECT
	supports_parallel = False

	def __init__(self, handler: Optional[StepHandler] = None):
		super().__init__()
		self.handler = handler or prompt_handler

	async def run_step(self, step: PlanStep, ctx: ExecutionContext) -> StepResult:
		logger.debug(f"Direct step {step.id}: {step.description}")
		ctx.report_progress(step.id, step.active_description)
		return await self.handler(step, ctx)
