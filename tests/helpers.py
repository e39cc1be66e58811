"""Shared test fixtures and helpers for agent-orchestrator tests."""

import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import MagicMock

from agent_orchestrator.config import OrchestratorConfig, StreamingConfig, ThrottleLimits
from agent_orchestrator.plans.models import PlanStep, TaskPlan, WorkerKind

# Worker scripts run as `python -c <script> <instructions>`
ECHO_SCRIPT = "import sys; print('working'); print('done', len(sys.argv[1]))"
FAIL_SCRIPT = "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"
SLEEP_SCRIPT = "import time; time.sleep(0.3); print('slept')"
CONDITIONAL_SCRIPT = "import sys; print('checking'); sys.exit(3 if 'FAIL' in sys.argv[1] else 0)"
FILE_SCRIPT = (
	"import sys, pathlib; "
	"name = sys.argv[1].split()[-1]; "
	"pathlib.Path(name).write_text('from worker\\n'); "
	"print('wrote', name)"
)


def init_git_repo(path: Path) -> None:
	"""Create a real git repo with an initial commit."""
	path.mkdir(parents=True, exist_ok=True)
	subprocess.run(["git", "init"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=str(path), capture_output=True)
	subprocess.run(["git", "config", "user.name", "Test"], cwd=str(path), capture_output=True)
	(path / "README.md").write_text("# Test\n")
	subprocess.run(["git", "add", "README.md"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "commit", "-m", "init"], cwd=str(path), capture_output=True, check=True)


def capture_tools(config: MagicMock, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Mock config object to pass to the registration function
		register_fn: The registration function (e.g., register_orchestration_tools)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config)
	return captured


def python_config(
	script: str = ECHO_SCRIPT,
	kinds: tuple[WorkerKind, ...] = (WorkerKind.CLAUDE,),
	**overrides,
) -> OrchestratorConfig:
	"""Orchestrator settings whose workers are Python one-liners instead of agent CLIs."""
	template = ["{cli}", "-c", script, "{instructions}"]
	config = OrchestratorConfig(
		cli_paths={kind: sys.executable for kind in WorkerKind},
		command_templates={kind: list(template) for kind in WorkerKind},
		enabled_workers=list(kinds),
		default_worker=kinds[0],
		use_worktrees=False,
		throttle_limits=ThrottleLimits(start_delay_ms=0),
		streaming=StreamingConfig(heartbeat_interval_s=1.0),
		schedule_tick_s=0.05,
		grace_period_s=1.0,
		shutdown_timeout_s=5.0,
	)
	return config.replace(**overrides).validate()


def make_step(
	step_id: str,
	description: Optional[str] = None,
	dependencies: Optional[list[str]] = None,
	**fields,
) -> PlanStep:
	"""Create a PlanStep with a readable default description."""
	return PlanStep(
		id=step_id,
		description=description or f"Update module {step_id}",
		dependencies=dependencies or [],
		**fields,
	)


def make_plan(
	steps: Optional[list[PlanStep]] = None,
	plan_id: str = "plan-test",
	request: str = "Add user authentication",
	approve: bool = True,
	**fields,
) -> TaskPlan:
	"""Create a plan, add its steps and move it through approval."""
	plan = TaskPlan(id=plan_id, request=request, **fields)
	for step in steps if steps is not None else [
		make_step("step-1", "Create auth module"),
		make_step("step-2", "Add JWT utils", ["step-1"]),
		make_step("step-3", "Write auth tests", ["step-2"]),
	]:
		plan.add_step(step)
	if approve:
		plan.submit_for_approval()
		plan.approve()
	return plan
