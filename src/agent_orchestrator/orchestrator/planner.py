"""
Planner - turns a natural-language request into a TaskPlan.

Two sources of structure:
- Heuristic decomposition: the request is split on sequencing words
  ("and then", "next", numbered items) and parallel markers ("also",
  bullet items). Sequencing creates a dependency on the previous part.
- Structured plans: grouped JSON, either supplied directly or produced
  by an injected async ``generate(prompt)`` callable (an LLM call in the
  hosting application). Unparseable output falls back to the heuristics.

Every produced step is scored by the complexity analyzer and the step
graph is validated before the plan is returned.
"""

import json
import logging
import re
import uuid
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from ..analyzer import analyze_step
from ..errors import PlanValidationError
from ..plans.models import ExecutionMode, PlanStep, SubagentKind, TaskPlan, WorkerKind

logger = logging.getLogger(__name__)

PlanGenerator = Callable[[str], Awaitable[str]]

SEQUENTIAL_SEPARATORS = (" and then ", " after that ", " next ", ". Then ", ". Next ")
PARALLEL_SEPARATORS = (" also ", " additionally ", ". Also ", "\n- ", "\n* ")
NUMBERED_ITEM = r"\n\s*\d+[.)]\s+"

_SEPARATOR_RE = re.compile(
	"(" + NUMBERED_ITEM + "|"
	+ "|".join(re.escape(s) for s in SEQUENTIAL_SEPARATORS + PARALLEL_SEPARATORS)
	+ ")"
)
_LEADING_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+")
_SENTENCE_END_RE = re.compile(r"[.!?](?:\s|$)")

MAX_DESCRIPTION_LENGTH = 100

FILE_EXTENSIONS = (
	".py", ".rs", ".js", ".jsx", ".ts", ".tsx", ".go", ".java", ".rb", ".c", ".h",
	".cpp", ".hpp", ".cs", ".json", ".yaml", ".yml", ".toml", ".md", ".txt",
	".html", ".css", ".sh", ".sql",
)
PATH_PREFIXES = ("src/", "./", "../")

# Checked in order; first match wins
WORKER_HINTS: tuple[tuple[tuple[str, ...], WorkerKind], ...] = (
	(("refactor", "explain", "analyze", "review", "complex"), WorkerKind.CLAUDE),
	(("fix", "simple", "quick", "typo"), WorkerKind.GEMINI),
)


# ---------------------------------------------------------------------------
# Structured plan schema
# ---------------------------------------------------------------------------


class SuggestedExecutor(BaseModel):
	"""Where a structured step would like to run."""
	worker: Optional[WorkerKind] = None
	subagent: Optional[SubagentKind] = None


class StepSpec(BaseModel):
	"""A step as it appears in a structured plan."""
	id: Optional[str] = None
	description: str
	instructions: str = ""
	relevant_files: list[str] = Field(default_factory=list)
	dependencies: list[str] = Field(default_factory=list)
	suggested_executor: Optional[SuggestedExecutor] = None


class GroupSpec(BaseModel):
	"""Steps in a group may run in parallel; the group waits for depends_on groups."""
	id: str
	depends_on: list[str] = Field(default_factory=list)
	steps: list[StepSpec] = Field(default_factory=list)


class PlanSpec(BaseModel):
	"""Top-level structured plan."""
	title: str = ""
	description: str = ""
	groups: list[GroupSpec] = Field(default_factory=list)


def extract_json(text: str) -> Optional[str]:
	"""Pull a JSON object out of plain text or a fenced code block."""
	fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL)
	if fenced:
		return fenced.group(1)
	start, end = text.find("{"), text.rfind("}")
	if start == -1 or end <= start:
		return None
	return text[start:end + 1]


def _mode_guidance(mode: ExecutionMode) -> str:
	if mode == ExecutionMode.DIRECT:
		return "Steps run one at a time in order; use a single group per step."
	if mode == ExecutionMode.SUBAGENT:
		return (
			"Independent steps run concurrently as specialized agents "
			"(analyzer, tester, refactorer, documenter). Suggest one with "
			'"suggested_executor": {"subagent": "<kind>"}.'
		)
	return (
		"Steps in the same group run in parallel on separate CLI workers "
		"(claude, gemini, self, copilot). Suggest one with "
		'"suggested_executor": {"worker": "<kind>"}.'
	)


def build_planning_prompt(request: str, mode: ExecutionMode) -> str:
	"""Prompt asking a model for a grouped JSON plan."""
	lines = [
		"Break the following request into a plan of concrete steps.",
		"",
		"## Request",
		request,
		"",
		"## Execution",
		_mode_guidance(mode),
		"",
		"## Output Format",
		"Respond with JSON only:",
		"```json",
		"{",
		'  "title": "Short plan title",',
		'  "description": "One paragraph summary",',
		'  "groups": [',
		"    {",
		'      "id": "group-1",',
		'      "depends_on": [],',
		'      "steps": [',
		"        {",
		'          "id": "step-1",',
		'          "description": "What the step does",',
		'          "instructions": "Full instructions for the executor",',
		'          "relevant_files": ["path/to/file.py"]',
		"        }",
		"      ]",
		"    }",
		"  ]",
		"}",
		"```",
	]
	return "\n".join(lines)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
	"""Creates TaskPlans from requests."""

	def __init__(self, generate: Optional[PlanGenerator] = None):
		"""
		Initialize the planner.

		Args:
			generate: Optional async callable returning a structured plan
				(JSON text) for a prompt. Without it, plans are heuristic.
		"""
		self.generate = generate

	async def create_plan(self, request: str, mode: ExecutionMode = ExecutionMode.ORCHESTRATION) -> TaskPlan:
		"""
		Decompose a request into a validated draft plan.

		Args:
			request: Natural-language request
			mode: Execution mode the plan is intended for

		Returns:
			TaskPlan in Draft status with analyzed steps
		"""
		if not request or not request.strip():
			raise PlanValidationError("Request is empty")

		if self.generate is not None:
			try:
				response = await self.generate(build_planning_prompt(request, mode))
				return self.plan_from_json(request, response, mode)
			except PlanValidationError as e:
				logger.warning(f"Generated plan unusable, falling back to heuristics: {e}")

		return self.heuristic_plan(request, mode)

	def heuristic_plan(self, request: str, mode: ExecutionMode = ExecutionMode.ORCHESTRATION) -> TaskPlan:
		"""Split the request on sequencing and parallel markers."""
		plan = TaskPlan(id=_new_plan_id(), request=request, mode=mode)

		previous: Optional[str] = None
		for i, (part, sequential) in enumerate(split_request(request)):
			step_id = f"step-{i + 1}"
			depends = previous is not None and (sequential or mode == ExecutionMode.DIRECT)
			plan.add_step(PlanStep(
				id=step_id,
				description=extract_description(part),
				instructions=part,
				relevant_files=extract_relevant_files(part),
				dependencies=[previous] if depends else [],
				preferred_worker=suggest_worker(part),
				priority=i,
			))
			previous = step_id

		return self._finalize(plan)

	def plan_from_json(
		self,
		request: str,
		text: str,
		mode: ExecutionMode = ExecutionMode.ORCHESTRATION,
	) -> TaskPlan:
		"""
		Build a plan from grouped JSON.

		Raises:
			PlanValidationError: If no JSON is found, it does not match the
				schema, or the resulting step graph is invalid
		"""
		raw = extract_json(text)
		if raw is None:
			raise PlanValidationError("No JSON object found in plan text")
		try:
			spec = PlanSpec.model_validate(json.loads(raw))
		except (json.JSONDecodeError, ValidationError) as e:
			raise PlanValidationError(f"Malformed plan JSON: {e}") from e
		if not any(group.steps for group in spec.groups):
			raise PlanValidationError("Structured plan has no steps")

		group_ids = {g.id for g in spec.groups}
		group_steps: dict[str, list[str]] = {}
		plan = TaskPlan(
			id=_new_plan_id(),
			request=request,
			title=spec.title,
			description=spec.description,
			mode=mode,
		)

		counter = 0
		for group in spec.groups:
			for dep in group.depends_on:
				if dep not in group_ids:
					raise PlanValidationError(f"Group {group.id} depends on unknown group {dep}")
			group_steps[group.id] = []
			for step_spec in group.steps:
				counter += 1
				step_id = step_spec.id or f"step-{counter}"
				executor = step_spec.suggested_executor or SuggestedExecutor()
				dependencies = list(dict.fromkeys(step_spec.dependencies))
				plan.add_step(PlanStep(
					id=step_id,
					description=step_spec.description,
					instructions=step_spec.instructions or step_spec.description,
					relevant_files=step_spec.relevant_files,
					dependencies=dependencies,
					preferred_worker=executor.worker,
					suggested_subagent=executor.subagent,
					priority=counter - 1,
				))
				group_steps[group.id].append(step_id)

		# Group edges become edges from every step of the group to every step of the dependency
		for group in spec.groups:
			for dep in group.depends_on:
				for step_id in group_steps[group.id]:
					step = plan.get_step(step_id)
					for dep_step in group_steps[dep]:
						if dep_step not in step.dependencies:
							step.dependencies.append(dep_step)

		if mode == ExecutionMode.DIRECT:
			for earlier, later in zip(plan.steps, plan.steps[1:]):
				if earlier.id not in later.dependencies:
					later.dependencies.append(earlier.id)

		logger.info(f"Parsed structured plan with {len(spec.groups)} groups, {len(plan.steps)} steps")
		return self._finalize(plan)

	def _finalize(self, plan: TaskPlan) -> TaskPlan:
		for step in plan.steps:
			analyze_step(step)
		plan.validate_graph()
		if not plan.title:
			plan.title = extract_description(plan.request)
		if not plan.description:
			plan.description = summarize(plan)
		logger.info(f"Created plan {plan.id} with {len(plan.steps)} steps ({plan.mode.value})")
		return plan


def _new_plan_id() -> str:
	return f"plan-{uuid.uuid4().hex[:12]}"


def split_request(request: str) -> list[tuple[str, bool]]:
	"""
	Split a request into parts.

	Returns:
		(text, sequential) pairs; sequential means the part follows the
		previous one rather than running alongside it
	"""
	pieces = _SEPARATOR_RE.split("\n" + request.strip() if _LEADING_MARKER_RE.match(request) else request)
	parts: list[tuple[str, bool]] = []
	sequential = False
	for i, piece in enumerate(pieces):
		if i % 2 == 1:
			sequential = piece in SEQUENTIAL_SEPARATORS or bool(re.fullmatch(NUMBERED_ITEM, piece))
			continue
		text = _LEADING_MARKER_RE.sub("", piece).strip()
		if text:
			parts.append((text, sequential))

	# A lead-in like "Please do the following:" is context, not a step
	if len(parts) > 1 and parts[0][0].endswith(":"):
		parts = parts[1:]
		parts[0] = (parts[0][0], False)

	if not parts:
		return [(request.strip(), False)]
	return parts


def extract_description(text: str) -> str:
	"""First sentence, shortened to MAX_DESCRIPTION_LENGTH characters."""
	first = _SENTENCE_END_RE.split(text.strip(), maxsplit=1)[0].strip().rstrip(".!?")
	first = first.splitlines()[0] if first else text.strip()
	if len(first) > MAX_DESCRIPTION_LENGTH:
		return first[:MAX_DESCRIPTION_LENGTH - 3] + "..."
	return first


def extract_relevant_files(text: str) -> list[str]:
	"""Words that look like file paths."""
	files: list[str] = []
	for word in text.split():
		word = word.strip(",.;:!?()[]'\"`")
		if not word:
			continue
		if word.endswith(FILE_EXTENSIONS) or word.startswith(PATH_PREFIXES):
			if word not in files:
				files.append(word)
	return files


def suggest_worker(text: str) -> Optional[WorkerKind]:
	"""Keyword hint for which worker suits a part; None leaves it to the strategy."""
	lowered = text.lower()
	for keywords, kind in WORKER_HINTS:
		if any(k in lowered for k in keywords):
			return kind
	return None


def summarize(plan: TaskPlan) -> str:
	"""Human-readable overview of a freshly created plan."""
	request = plan.request.strip()
	if len(request) > MAX_DESCRIPTION_LENGTH:
		request = request[:MAX_DESCRIPTION_LENGTH - 3] + "..."
	lines = [f'Plan to address: "{request}"', f"Breaking down into {len(plan.steps)} step(s):"]
	for i, step in enumerate(plan.steps, 1):
		lines.append(f"  {i}. {step.description}")
	files = [f for step in plan.steps for f in step.relevant_files]
	if files:
		lines.append(f"Relevant files: {', '.join(dict.fromkeys(files))}")
	return "\n".join(lines)
