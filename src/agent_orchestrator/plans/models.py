"""
Plan Models - Pydantic schemas for plan steps and task plans.

Defines the unit of work (PlanStep), the dependency-ordered TaskPlan,
the status lifecycles both move through, and the closed enumerations
(worker kinds, execution modes) the rest of the system is keyed by.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..errors import PlanStateError, PlanValidationError, SchedulingInvariantError


class WorkerKind(str, Enum):
	"""External CLI backends a step can be dispatched to (declaration order is significant)."""
	CLAUDE = "claude"
	GEMINI = "gemini"
	SELF = "self"
	COPILOT = "copilot"

	@classmethod
	def _missing_(cls, value):
		aliases = {
			"claude_code": cls.CLAUDE,
			"claude-code": cls.CLAUDE,
			"gemini_cli": cls.GEMINI,
			"gemini-cli": cls.GEMINI,
			"agent-orchestrator": cls.SELF,
			"github_copilot": cls.COPILOT,
			"github-copilot": cls.COPILOT,
		}
		if isinstance(value, str):
			return aliases.get(value.lower())
		return None


class ExecutionMode(str, Enum):
	"""How a plan's steps are carried out."""
	DIRECT = "direct"
	SUBAGENT = "subagent"
	ORCHESTRATION = "orchestration"


class SubagentKind(str, Enum):
	"""Specialized in-process agents used by the subagent execution mode."""
	ANALYZER = "analyzer"
	TESTER = "tester"
	REFACTORER = "refactorer"
	DOCUMENTER = "documenter"
	CUSTOM = "custom"


class Complexity(str, Enum):
	"""Complexity tier derived from a step's score."""
	SIMPLE = "simple"
	MEDIUM = "medium"
	COMPLEX = "complex"


class StepStatus(str, Enum):
	"""Status of a single plan step."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	SKIPPED = "skipped"


class PlanStatus(str, Enum):
	"""Status of a plan."""
	DRAFT = "draft"
	AWAITING_APPROVAL = "awaiting_approval"
	APPROVED = "approved"
	RUNNING = "running"
	COMPLETED = "completed"
	REJECTED = "rejected"
	FAILED = "failed"


STEP_TERMINAL = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})
PLAN_TERMINAL = frozenset({PlanStatus.COMPLETED, PlanStatus.REJECTED, PlanStatus.FAILED})

_STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
	StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
	StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
}

_PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
	PlanStatus.DRAFT: frozenset({PlanStatus.AWAITING_APPROVAL}),
	PlanStatus.AWAITING_APPROVAL: frozenset({PlanStatus.APPROVED, PlanStatus.REJECTED}),
	PlanStatus.APPROVED: frozenset({PlanStatus.RUNNING}),
	PlanStatus.RUNNING: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED}),
}

STATUS_ICONS = {
	StepStatus.PENDING: "◯",
	StepStatus.RUNNING: "◐",
	StepStatus.COMPLETED: "✓",
	StepStatus.FAILED: "✗",
	StepStatus.SKIPPED: "−",
}

# Leading verb -> progressive form used for "active" step descriptions
_ACTIVE_VERBS = {
	"add": "Adding",
	"analyze": "Analyzing",
	"build": "Building",
	"check": "Checking",
	"create": "Creating",
	"delete": "Deleting",
	"document": "Documenting",
	"fix": "Fixing",
	"implement": "Implementing",
	"migrate": "Migrating",
	"modify": "Modifying",
	"refactor": "Refactoring",
	"remove": "Removing",
	"review": "Reviewing",
	"run": "Running",
	"test": "Testing",
	"update": "Updating",
	"write": "Writing",
}


def _now() -> str:
	return datetime.now().isoformat()


class InlineAssignment(BaseModel):
	"""Run the step in the executor that owns the plan."""
	placement: Literal["inline"] = "inline"


class SubagentAssignment(BaseModel):
	"""Route the step to a specialized subagent. Modeled, not produced by the scorer."""
	placement: Literal["subagent"] = "subagent"
	kind: SubagentKind = SubagentKind.CUSTOM


StepAssignment = Annotated[
	Union[InlineAssignment, SubagentAssignment],
	Field(discriminator="placement"),
]


class StepResult(BaseModel):
	"""Outcome of executing one step."""
	success: bool
	output: str = ""
	error: Optional[str] = None
	duration_ms: int = 0
	files_modified: list[str] = Field(default_factory=list)


class PlanStep(BaseModel):
	"""A single unit of work within a plan."""
	id: str = Field(description="Unique step identifier, stable for the plan's lifetime")
	description: str = Field(description="Short human-readable summary")
	instructions: str = Field(default="", description="Full instruction text for the executor")
	relevant_files: list[str] = Field(default_factory=list, description="Path hints")
	dependencies: list[str] = Field(default_factory=list, description="Step ids that must complete first")
	preferred_worker: Optional[WorkerKind] = Field(default=None)
	suggested_subagent: Optional[SubagentKind] = Field(default=None)
	priority: int = Field(default=0, description="Lower values are considered first")

	# Computed by the complexity analyzer
	complexity_score: int = Field(default=0, ge=0, le=100)
	complexity: Complexity = Field(default=Complexity.SIMPLE)
	assignment: StepAssignment = Field(default_factory=InlineAssignment)

	# Runtime
	status: StepStatus = Field(default=StepStatus.PENDING)
	output: Optional[str] = Field(default=None)
	error: Optional[str] = Field(default=None)
	duration_ms: Optional[int] = Field(default=None)
	files_modified: list[str] = Field(default_factory=list)
	started_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)

	@property
	def is_terminal(self) -> bool:
		return self.status in STEP_TERMINAL

	@property
	def status_icon(self) -> str:
		return STATUS_ICONS[self.status]

	@property
	def active_description(self) -> str:
		"""Progressive form of the description, e.g. 'Add tests' -> 'Adding tests'."""
		words = self.description.split(maxsplit=1)
		if not words:
			return "Working"
		active = _ACTIVE_VERBS.get(words[0].lower())
		if active is None:
			return f"Working on: {self.description}"
		rest = f" {words[1]}" if len(words) > 1 else ""
		return f"{active}{rest}"

	def _transition(self, target: StepStatus) -> None:
		allowed = _STEP_TRANSITIONS.get(self.status, frozenset())
		if target not in allowed:
			raise PlanStateError(
				f"Step {self.id}: cannot move from {self.status.value} to {target.value}"
			)
		self.status = target


class TaskPlan(BaseModel):
	"""
	An ordered collection of steps with dependency edges.

	The step graph must be acyclic and every dependency must name a step
	in the plan. Once approved, only status fields may change.
	"""
	id: str = Field(description="Unique plan identifier")
	request: str = Field(description="The request this plan addresses")
	title: str = Field(default="")
	description: str = Field(default="", description="Summary of the planned work")
	mode: ExecutionMode = Field(default=ExecutionMode.ORCHESTRATION)
	status: PlanStatus = Field(default=PlanStatus.DRAFT)
	steps: list[PlanStep] = Field(default_factory=list)

	created_at: str = Field(default_factory=_now)
	approved_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)
	rejection_reason: Optional[str] = Field(default=None)

	# -- structure ---------------------------------------------------------

	@property
	def is_editable(self) -> bool:
		return self.status in (PlanStatus.DRAFT, PlanStatus.AWAITING_APPROVAL)

	def add_step(self, step: PlanStep) -> PlanStep:
		"""Append a step. Only allowed before approval."""
		if not self.is_editable:
			raise PlanStateError(f"Plan {self.id} is {self.status.value}; steps cannot be added")
		if self.get_step(step.id) is not None:
			raise PlanValidationError(f"Duplicate step id: {step.id}")
		self.steps.append(step)
		return step

	def get_step(self, step_id: str) -> Optional[PlanStep]:
		for step in self.steps:
			if step.id == step_id:
				return step
		return None

	def _require_step(self, step_id: str) -> PlanStep:
		step = self.get_step(step_id)
		if step is None:
			raise PlanValidationError(f"Unknown step id: {step_id}")
		return step

	def validate_graph(self) -> None:
		"""
		Check the dependency graph.

		Raises:
			PlanValidationError: On duplicate ids, self-dependencies,
				unknown dependency ids, or cycles.
		"""
		ids = [s.id for s in self.steps]
		if len(ids) != len(set(ids)):
			dupes = sorted({i for i in ids if ids.count(i) > 1})
			raise PlanValidationError(f"Duplicate step ids: {', '.join(dupes)}")

		known = set(ids)
		for step in self.steps:
			for dep in step.dependencies:
				if dep == step.id:
					raise PlanValidationError(f"Step {step.id} depends on itself")
				if dep not in known:
					raise PlanValidationError(f"Step {step.id} depends on unknown step {dep}")

		order = self.topological_order()
		if len(order) != len(self.steps):
			stuck = sorted(known - set(order))
			raise PlanValidationError(f"Dependency cycle among steps: {', '.join(stuck)}")

	def topological_order(self) -> list[str]:
		"""Kahn's algorithm over step ids. Steps on a cycle are left out."""
		indegree = {s.id: len(set(s.dependencies)) for s in self.steps}
		dependents: dict[str, list[str]] = {s.id: [] for s in self.steps}
		for step in self.steps:
			for dep in set(step.dependencies):
				if dep in dependents:
					dependents[dep].append(step.id)

		queue = [s.id for s in self.steps if indegree[s.id] == 0]
		order: list[str] = []
		while queue:
			current = queue.pop(0)
			order.append(current)
			for child in dependents[current]:
				indegree[child] -= 1
				if indegree[child] == 0:
					queue.append(child)
		return order

	def dependents_of(self, step_id: str) -> list[str]:
		"""All step ids that depend on step_id directly or transitively."""
		found: list[str] = []
		frontier = [step_id]
		while frontier:
			current = frontier.pop()
			for step in self.steps:
				if current in step.dependencies and step.id not in found:
					found.append(step.id)
					frontier.append(step.id)
		return found

	# -- plan lifecycle ----------------------------------------------------

	def _transition(self, target: PlanStatus) -> None:
		allowed = _PLAN_TRANSITIONS.get(self.status, frozenset())
		if target not in allowed:
			raise PlanStateError(
				f"Plan {self.id}: cannot move from {self.status.value} to {target.value}"
			)
		self.status = target

	def submit_for_approval(self) -> None:
		self.validate_graph()
		self._transition(PlanStatus.AWAITING_APPROVAL)

	def approve(self) -> None:
		self.validate_graph()
		self._transition(PlanStatus.APPROVED)
		self.approved_at = _now()

	def reject(self, reason: str = "") -> None:
		self._transition(PlanStatus.REJECTED)
		self.rejection_reason = reason or None
		self.completed_at = _now()

	def start(self) -> None:
		self._transition(PlanStatus.RUNNING)

	def finish(self) -> PlanStatus:
		"""
		Move a running plan to its terminal state.

		Completed only when every step completed; Failed otherwise.
		Can only happen once.
		"""
		if any(not s.is_terminal for s in self.steps):
			unfinished = [s.id for s in self.steps if not s.is_terminal]
			raise PlanStateError(f"Plan {self.id} still has unfinished steps: {', '.join(unfinished)}")
		all_completed = all(s.status == StepStatus.COMPLETED for s in self.steps)
		self._transition(PlanStatus.COMPLETED if all_completed else PlanStatus.FAILED)
		self.completed_at = _now()
		return self.status

	# -- step lifecycle ----------------------------------------------------

	def ready_steps(self) -> list[PlanStep]:
		"""Pending steps whose dependencies all completed, by priority then declaration order."""
		completed = {s.id for s in self.steps if s.status == StepStatus.COMPLETED}
		ready = [
			s for s in self.steps
			if s.status == StepStatus.PENDING and all(d in completed for d in s.dependencies)
		]
		return sorted(ready, key=lambda s: s.priority)

	def start_step(self, step_id: str) -> PlanStep:
		"""
		Mark a step as running.

		Raises:
			SchedulingInvariantError: If the plan is not running or any
				dependency has not completed.
		"""
		if self.status != PlanStatus.RUNNING:
			raise SchedulingInvariantError(
				f"Cannot start step {step_id}: plan {self.id} is {self.status.value}"
			)
		step = self._require_step(step_id)
		unmet = [
			d for d in step.dependencies
			if self._require_step(d).status != StepStatus.COMPLETED
		]
		if unmet:
			raise SchedulingInvariantError(
				f"Cannot start step {step_id}: dependencies not completed: {', '.join(unmet)}"
			)
		step._transition(StepStatus.RUNNING)
		step.started_at = _now()
		return step

	def record_result(self, step_id: str, result: StepResult) -> PlanStep:
		"""Apply a step result: Completed on success, Failed otherwise."""
		step = self._require_step(step_id)
		step._transition(StepStatus.COMPLETED if result.success else StepStatus.FAILED)
		step.output = result.output or None
		step.error = result.error if not result.success else None
		if not result.success and not step.error:
			step.error = "Step failed without an error message"
		step.duration_ms = result.duration_ms
		step.files_modified = list(result.files_modified)
		step.completed_at = _now()
		return step

	def skip_dependents(self, step_id: str) -> list[PlanStep]:
		"""Mark every pending transitive dependent of step_id as skipped."""
		skipped = []
		for dep_id in self.dependents_of(step_id):
			step = self._require_step(dep_id)
			if step.status == StepStatus.PENDING:
				step._transition(StepStatus.SKIPPED)
				step.error = f"Skipped: dependency {step_id} did not complete"
				step.completed_at = _now()
				skipped.append(step)
		return skipped

	def skip_pending(self, reason: str) -> list[PlanStep]:
		"""Mark all remaining pending steps as skipped (used on cancellation)."""
		skipped = []
		for step in self.steps:
			if step.status == StepStatus.PENDING:
				step._transition(StepStatus.SKIPPED)
				step.error = reason
				step.completed_at = _now()
				skipped.append(step)
		return skipped

	# -- reporting ---------------------------------------------------------

	def count(self, status: StepStatus) -> int:
		return len([s for s in self.steps if s.status == status])

	@property
	def completed_count(self) -> int:
		return self.count(StepStatus.COMPLETED)

	@property
	def progress_percent(self) -> float:
		if not self.steps:
			return 0.0
		finished = len([s for s in self.steps if s.is_terminal])
		return round(finished / len(self.steps) * 100, 1)

	def progress(self) -> dict:
		"""Counts by step status plus a completion percentage."""
		return {
			"total_steps": len(self.steps),
			"pending": self.count(StepStatus.PENDING),
			"running": self.count(StepStatus.RUNNING),
			"completed": self.count(StepStatus.COMPLETED),
			"failed": self.count(StepStatus.FAILED),
			"skipped": self.count(StepStatus.SKIPPED),
			"percent_complete": self.progress_percent,
		}

	@property
	def summary(self) -> str:
		return (
			f"{self.completed_count}/{len(self.steps)} steps completed"
			f" ({self.count(StepStatus.FAILED)} failed, {self.count(StepStatus.SKIPPED)} skipped)"
		)

	def instructions_with_plan_context(self, step: PlanStep) -> str:
		"""Step instructions prefixed with the overall request and finished sibling work."""
		lines = [
			"## Overall Request",
			self.request,
			"",
		]
		done = [s for s in self.steps if s.status == StepStatus.COMPLETED and s.id != step.id]
		if done:
			lines.append("## Already Completed")
			for s in done:
				lines.append(f"- {s.id}: {s.description}")
			lines.append("")
		lines.extend([
			f"## Your Task ({step.id})",
			step.instructions or step.description,
		])
		if step.relevant_files:
			lines.extend(["", "Relevant files: " + ", ".join(step.relevant_files)])
		return "\n".join(lines)

	def to_markdown(self) -> str:
		"""Convert plan to markdown format."""
		lines = [
			f"# {self.title or self.request[:80]}",
			"",
			f"**Plan:** {self.id}",
			f"**Mode:** {self.mode.value}",
			f"**Status:** {self.status.value}",
			f"**Progress:** {self.summary}",
			"",
			"## Steps",
			"",
		]
		for step in self.steps:
			deps = f" (after {', '.join(step.dependencies)})" if step.dependencies else ""
			worker = f" [{step.preferred_worker.value}]" if step.preferred_worker else ""
			lines.append(
				f"- {step.status_icon} **{step.id}** {step.description}{deps}{worker}"
				f" - {step.complexity.value} ({step.complexity_score})"
			)
			if step.error:
				lines.append(f"  - Error: {step.error}")
		if self.rejection_reason:
			lines.extend(["", f"**Rejected:** {self.rejection_reason}"])
		return "\n".join(lines)
