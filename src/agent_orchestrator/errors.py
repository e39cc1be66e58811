"""Error taxonomy for planning and orchestration."""


class AgentOrchestratorError(Exception):
	"""Base class for all agent-orchestrator errors."""


class ConfigurationError(AgentOrchestratorError):
	"""Invalid or incomplete configuration. Raised before any dispatch."""


class PlanValidationError(AgentOrchestratorError):
	"""A plan's step graph is malformed (cycle, self-dependency, unknown id)."""


class PlanStateError(AgentOrchestratorError):
	"""An illegal plan or step status transition, or an edit to an approved plan."""


class SchedulingInvariantError(AgentOrchestratorError):
	"""The scheduler tried to start a step whose dependencies are not all completed."""


class SpawnError(AgentOrchestratorError):
	"""A worker process could not be started (binary missing, permission denied)."""


class WorkerRuntimeError(AgentOrchestratorError):
	"""A worker process crashed or exited with a non-zero code."""


class CancellationError(AgentOrchestratorError):
	"""Work was stopped by an explicit stop request."""


class WorkspaceError(AgentOrchestratorError):
	"""A git worktree could not be provisioned or torn down."""
