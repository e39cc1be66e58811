"""Tests for request decomposition and structured plan parsing."""

import json

import pytest

from agent_orchestrator.errors import PlanValidationError
from agent_orchestrator.orchestrator.planner import (
	Planner,
	build_planning_prompt,
	extract_description,
	extract_json,
	extract_relevant_files,
	split_request,
	suggest_worker,
)
from agent_orchestrator.plans.models import ExecutionMode, PlanStatus, SubagentKind, WorkerKind


def _grouped_plan(**overrides) -> dict:
	plan = {
		"title": "Add auth",
		"description": "Login plus tests",
		"groups": [
			{
				"id": "group-1",
				"steps": [
					{"id": "models", "description": "Create user model", "relevant_files": ["src/models.py"]},
					{"id": "views", "description": "Create login view", "suggested_executor": {"worker": "gemini"}},
				],
			},
			{
				"id": "group-2",
				"depends_on": ["group-1"],
				"steps": [
					{"id": "tests", "description": "Write tests", "suggested_executor": {"subagent": "tester"}},
				],
			},
		],
	}
	plan.update(overrides)
	return plan


class TestSplitRequest:
	def test_single_part(self):
		assert split_request("Fix the login bug") == [("Fix the login bug", False)]

	def test_sequential(self):
		parts = split_request("Add a login page and then write tests for it")
		assert parts == [("Add a login page", False), ("write tests for it", True)]

	def test_parallel(self):
		parts = split_request("Update README.md also fix typo in src/app.py")
		assert parts == [("Update README.md", False), ("fix typo in src/app.py", False)]

	def test_numbered_list_drops_lead_in(self):
		parts = split_request("Do the following:\n1. Add models\n2. Add views")
		assert parts == [("Add models", False), ("Add views", True)]

	def test_bullets_are_parallel(self):
		parts = split_request("- Add models\n- Add views")
		assert parts == [("Add models", False), ("Add views", False)]


class TestExtraction:
	def test_description_first_sentence(self):
		assert extract_description("Refactor the parser. It is too slow.") == "Refactor the parser"

	def test_description_truncated(self):
		text = "Implement " + "a" * 200
		description = extract_description(text)
		assert len(description) == 100
		assert description.endswith("...")

	def test_relevant_files(self):
		files = extract_relevant_files("Edit src/app.py and config.toml, then check ./scripts/run and app.py.")
		assert files == ["src/app.py", "config.toml", "./scripts/run", "app.py"]

	def test_suggest_worker(self):
		assert suggest_worker("Refactor the module") == WorkerKind.CLAUDE
		assert suggest_worker("quick typo") == WorkerKind.GEMINI
		assert suggest_worker("Add a page") is None

	def test_extract_json_fenced(self):
		assert extract_json('Here:\n```json\n{"a": 1}\n```') == '{"a": 1}'

	def test_extract_json_bare(self):
		assert extract_json('text {"a": {"b": 2}} more') == '{"a": {"b": 2}}'
		assert extract_json("no json here") is None


class TestHeuristicPlan:
	@pytest.mark.asyncio
	async def test_creates_draft_plan(self):
		plan = await Planner().create_plan("Add a login page and then write tests for it")
		assert plan.status == PlanStatus.DRAFT
		assert plan.mode == ExecutionMode.ORCHESTRATION
		assert [s.id for s in plan.steps] == ["step-1", "step-2"]
		assert plan.steps[1].dependencies == ["step-1"]
		assert plan.title == "Add a login page and then write tests for it"
		assert plan.description.startswith('Plan to address: "Add a login page')
		assert "Breaking down into 2 step(s):" in plan.description

	@pytest.mark.asyncio
	async def test_parallel_parts_independent(self):
		plan = await Planner().create_plan("Update README.md also fix typo in src/app.py")
		assert all(not s.dependencies for s in plan.steps)
		assert plan.steps[1].relevant_files == ["src/app.py"]
		assert plan.steps[1].preferred_worker == WorkerKind.GEMINI

	@pytest.mark.asyncio
	async def test_direct_mode_is_sequential(self):
		plan = await Planner().create_plan("Update README.md also fix typo in src/app.py", ExecutionMode.DIRECT)
		assert plan.steps[1].dependencies == ["step-1"]

	@pytest.mark.asyncio
	async def test_steps_are_scored(self):
		plan = await Planner().create_plan("Refactor src/a.py src/b.py src/c.py src/d.py src/e.py thoroughly")
		step = plan.steps[0]
		assert step.complexity_score > 0
		assert step.complexity_score == 30 + 20 + len(step.description) // 20 + len(step.instructions) // 50

	@pytest.mark.asyncio
	async def test_empty_request(self):
		with pytest.raises(PlanValidationError):
			await Planner().create_plan("   ")


class TestStructuredPlan:
	def test_groups_become_edges(self):
		plan = Planner().plan_from_json("Add auth", json.dumps(_grouped_plan()))
		assert plan.title == "Add auth"
		assert plan.get_step("models").dependencies == []
		assert plan.get_step("views").dependencies == []
		assert sorted(plan.get_step("tests").dependencies) == ["models", "views"]
		assert plan.get_step("views").preferred_worker == WorkerKind.GEMINI
		assert plan.get_step("tests").suggested_subagent == SubagentKind.TESTER
		assert plan.get_step("models").instructions == "Create user model"

	def test_direct_mode_chains_steps(self):
		plan = Planner().plan_from_json("Add auth", json.dumps(_grouped_plan()), ExecutionMode.DIRECT)
		assert plan.get_step("views").dependencies == ["models"]

	def test_generated_ids(self):
		data = {"groups": [{"id": "g", "steps": [{"description": "One"}, {"description": "Two"}]}]}
		plan = Planner().plan_from_json("req", json.dumps(data))
		assert [s.id for s in plan.steps] == ["step-1", "step-2"]

	def test_unknown_group(self):
		data = _grouped_plan()
		data["groups"][1]["depends_on"] = ["group-9"]
		with pytest.raises(PlanValidationError, match="unknown group"):
			Planner().plan_from_json("req", json.dumps(data))

	def test_cycle_rejected(self):
		data = {"groups": [{"id": "g", "steps": [
			{"id": "a", "description": "A", "dependencies": ["b"]},
			{"id": "b", "description": "B", "dependencies": ["a"]},
		]}]}
		with pytest.raises(PlanValidationError, match="cycle"):
			Planner().plan_from_json("req", json.dumps(data))

	def test_malformed(self):
		with pytest.raises(PlanValidationError):
			Planner().plan_from_json("req", "{not json}")
		with pytest.raises(PlanValidationError, match="no steps"):
			Planner().plan_from_json("req", '{"groups": []}')

	@pytest.mark.asyncio
	async def test_generator_used(self):
		prompts = []

		async def generate(prompt: str) -> str:
			prompts.append(prompt)
			return "```json\n" + json.dumps(_grouped_plan()) + "\n```"

		plan = await Planner(generate).create_plan("Add auth")
		assert len(plan.steps) == 3
		assert "## Request\nAdd auth" in prompts[0]

	@pytest.mark.asyncio
	async def test_generator_fallback(self):
		async def generate(prompt: str) -> str:
			return "I cannot plan that."

		plan = await Planner(generate).create_plan("Fix the login bug")
		assert [s.id for s in plan.steps] == ["step-1"]


def test_planning_prompt_mentions_mode():
	assert "specialized agents" in build_planning_prompt("x", ExecutionMode.SUBAGENT)
	assert "one at a time" in build_planning_prompt("x", ExecutionMode.DIRECT)
