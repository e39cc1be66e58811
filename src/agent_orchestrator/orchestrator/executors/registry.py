"""Executor registry - exactly one executor per execution mode."""

import logging
from typing import Optional

from ...errors import ConfigurationError
from ...plans.models import ExecutionMode
from ..manager import LiveOrchestrationManager
from .base import PlanExecutor
from .direct import DirectExecutor, StepHandler
from .orchestration import OrchestrationExecutor
from .subagent import SubagentExecutor, SubagentHandler

logger = logging.getLogger(__name__)


class ExecutorRegistry:
	"""Maps each ExecutionMode to the executor that carries it out."""

	def __init__(self) -> None:
		self._executors: dict[ExecutionMode, PlanExecutor] = {}

	def register(self, executor: PlanExecutor) -> None:
		"""Register an executor for its mode, replacing any previous one."""
		if executor.mode in self._executors:
			logger.info(f"Replacing {self._executors[executor.mode].name} executor for {executor.mode.value}")
		self._executors[executor.mode] = executor

	def get(self, mode: ExecutionMode) -> PlanExecutor:
		"""
		Look up the executor for a mode.

		Raises:
			ConfigurationError: If nothing is registered for the mode
		"""
		executor = self._executors.get(mode)
		if executor is None:
			registered = ", ".join(m.value for m in self._executors) or "none"
			raise ConfigurationError(
				f"No executor registered for mode '{mode.value}' (registered: {registered})"
			)
		return executor

	def has(self, mode: ExecutionMode) -> bool:
		return mode in self._executors

	def modes(self) -> list[ExecutionMode]:
		return list(self._executors)

	def executors(self) -> list[PlanExecutor]:
		return list(self._executors.values())


def create_default_registry(
	manager: LiveOrchestrationManager,
	direct_handler: Optional[StepHandler] = None,
	subagent_handler: Optional[SubagentHandler] = None,
) -> ExecutorRegistry:
	"""Registry with the direct, subagent and orchestration executors."""
	registry = ExecutorRegistry()
	registry.register(DirectExecutor(direct_handler))
	registry.register(SubagentExecutor(subagent_handler))
	registry.register(OrchestrationExecutor(manager))
	return registry
