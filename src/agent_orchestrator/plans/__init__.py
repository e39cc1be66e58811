"""Plans module - Step and plan models with their status lifecycles."""

from .models import (
	Complexity,
	ExecutionMode,
	PlanStatus,
	PlanStep,
	StepResult,
	StepStatus,
	SubagentKind,
	TaskPlan,
	WorkerKind,
)

__all__ = [
	"TaskPlan",
	"PlanStep",
	"StepResult",
	"PlanStatus",
	"StepStatus",
	"Complexity",
	"ExecutionMode",
	"SubagentKind",
	"WorkerKind",
]
