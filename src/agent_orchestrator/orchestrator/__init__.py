"""Orchestrator module - planning, scheduling, worker pool and live workers."""

from .events import EventBus, EventType, OrchestratorEvent, Subscription
from .manager import LiveOrchestrationManager, WorkerRecord
from .planner import Planner
from .pool import TaskRule, ThrottleController, WorkerPool
from .worker import StreamingWorker, WorkerResult, WorkerState
from .workspace import WorkspaceManager

__all__ = [
	"EventBus",
	"EventType",
	"OrchestratorEvent",
	"Subscription",
	"LiveOrchestrationManager",
	"WorkerRecord",
	"Planner",
	"TaskRule",
	"ThrottleController",
	"WorkerPool",
	"StreamingWorker",
	"WorkerResult",
	"WorkerState",
	"WorkspaceManager",
]
