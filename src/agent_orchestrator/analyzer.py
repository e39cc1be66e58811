"""Step complexity analyzer - scores plan steps and maps them to tiers."""

from .plans.models import (
    Complexity,
    InlineAssignment,
    PlanStep,
    StepAssignment,
    SubagentKind,
)

# First matching class wins, checked in descending severity
KEYWORD_CLASSES: tuple[tuple[tuple[str, ...], int], ...] = (
    (("refactor", "rewrite", "redesign", "migrate", "restructure"), 30),
    (("implement", "create", "add feature", "build", "develop", "integrate"), 20),
    (("fix", "update", "modify", "test", "change", "adjust"), 15),
    (("read", "analyze", "check", "document", "review", "explore", "find"), 5),
)

FILE_POINTS, MAX_FILES = 4, 5
DESCRIPTION_CHARS_PER_POINT, MAX_DESCRIPTION_CHARS = 20, 300
DEPENDENCY_POINTS, MAX_DEPENDENCIES = 5, 3
INSTRUCTION_CHARS_PER_POINT, MAX_INSTRUCTION_CHARS = 50, 1000

SIMPLE_MAX = 30
MEDIUM_MAX = 60

SUBAGENT_KEYWORDS: tuple[tuple[tuple[str, ...], SubagentKind], ...] = (
    (("test", "spec", "coverage"), SubagentKind.TESTER),
    (("document", "docs", "readme", "docstring"), SubagentKind.DOCUMENTER),
    (("refactor", "restructure", "clean up", "simplify"), SubagentKind.REFACTORER),
    (("analyze", "review", "explore", "find", "investigate"), SubagentKind.ANALYZER),
)


def keyword_points(description: str) -> int:
    """Points for the first keyword class found in the description."""
    text = description.lower()
    for keywords, points in KEYWORD_CLASSES:
        if any(k in text for k in keywords):
            return points
    return 0


def score(step: PlanStep) -> int:
    """
    Score a step's complexity in [0, 100].

    Pure function of the step's description, instructions, relevant
    files and dependencies. Each contribution is capped before summing.
    """
    file_points = min(len(step.relevant_files), MAX_FILES) * FILE_POINTS
    description_points = (
        min(len(step.description), MAX_DESCRIPTION_CHARS) // DESCRIPTION_CHARS_PER_POINT
    )
    dependency_points = min(len(set(step.dependencies)), MAX_DEPENDENCIES) * DEPENDENCY_POINTS
    instruction_points = (
        min(len(step.instructions), MAX_INSTRUCTION_CHARS) // INSTRUCTION_CHARS_PER_POINT
    )
    total = (
        file_points
        + keyword_points(step.description)
        + description_points
        + dependency_points
        + instruction_points
    )
    return min(total, 100)


def tier_for(value: int) -> Complexity:
    """Map a score to its tier: 0-30 simple, 31-60 medium, 61-100 complex."""
    if value <= SIMPLE_MAX:
        return Complexity.SIMPLE
    if value <= MEDIUM_MAX:
        return Complexity.MEDIUM
    return Complexity.COMPLEX


def assign_step(step: PlanStep) -> StepAssignment:
    """Execution placement for a step. Always inline; subagent placement is disabled."""
    return InlineAssignment()


def subagent_kind_for(step: PlanStep) -> SubagentKind:
    """Pick a specialized subagent from the step's suggestion or its description."""
    if step.suggested_subagent is not None:
        return step.suggested_subagent
    text = f"{step.description} {step.instructions}".lower()
    for keywords, kind in SUBAGENT_KEYWORDS:
        if any(k in text for k in keywords):
            return kind
    return SubagentKind.CUSTOM


def analyze_step(step: PlanStep) -> PlanStep:
    """Populate complexity_score, complexity and assignment on a step in place."""
    value = score(step)
    step.complexity_score = value
    step.complexity = tier_for(value)
    step.assignment = assign_step(step)
    return step
