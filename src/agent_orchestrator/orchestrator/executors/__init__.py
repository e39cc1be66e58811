"""Plan executors - one strategy per execution mode."""

from .base import ExecutionContext, PlanExecutor
from .direct import DirectExecutor
from .orchestration import OrchestrationExecutor
from .registry import ExecutorRegistry, create_default_registry
from .subagent import SubagentExecutor

__all__ = [
	"ExecutionContext",
	"PlanExecutor",
	"DirectExecutor",
	"SubagentExecutor",
	"OrchestrationExecutor",
	"ExecutorRegistry",
	"create_default_registry",
]
