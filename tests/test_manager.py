"""Tests for the live orchestration manager."""

import asyncio
import subprocess
from pathlib import Path

import pytest

from agent_orchestrator.config import ThrottleLimits
from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.orchestrator.events import EventBus, EventType
from agent_orchestrator.orchestrator.manager import LiveOrchestrationManager
from agent_orchestrator.orchestrator.worker import WorkerState
from agent_orchestrator.plans.models import PlanStep, WorkerKind

from .helpers import ECHO_SCRIPT, FAIL_SCRIPT, FILE_SCRIPT, init_git_repo, python_config

LONG_SLEEP_SCRIPT = "import time; print('ready', flush=True); time.sleep(30)"


def _step(step_id: str = "step-1") -> PlanStep:
	return PlanStep(id=step_id, description=f"Run {step_id}", instructions=f"do {step_id}")


def _drain(sub) -> list:
	events = []
	while (event := sub.get_nowait()) is not None:
		events.append(event)
	return events


class SlowWorkspaces:
	"""Workspace provider with a per-key provisioning delay."""

	def __init__(self, root: Path, delays: dict[str, float]):
		self.root = root
		self.delays = delays
		self.created: list[str] = []

	async def create(self, key: str) -> Path:
		await asyncio.sleep(self.delays.get(key, 0))
		path = self.root / key
		path.mkdir()
		self.created.append(key)
		return path

	async def merge(self, key: str, message=None) -> dict:
		return {"success": True, "conflict": False, "output": ""}

	async def cleanup(self, key: str) -> bool:
		return True

	async def cleanup_all(self) -> int:
		return 0


class TestDispatch:
	@pytest.mark.asyncio
	async def test_worker_runs_and_releases(self, tmp_path: Path):
		manager = LiveOrchestrationManager(python_config(ECHO_SCRIPT), tmp_path)
		sub = manager.events.subscribe()

		kind = manager.try_reserve(_step())
		assert kind == WorkerKind.CLAUDE
		record = manager.start_worker(_step(), kind, plan_id="plan-1")
		assert record.state == WorkerState.STARTING
		assert manager.pool.throttle.running_total == 1

		result = await record.task
		assert result.success
		assert record.state == WorkerState.COMPLETED
		assert record.exit_code == 0
		assert record.last_output == "done 9"
		assert record.workspace == tmp_path
		assert manager.pool.throttle.running_total == 0
		assert manager.active_workers() == []

		types = [e.type for e in _drain(sub)]
		assert types[0] == EventType.WORKER_STARTED
		assert EventType.WORKER_OUTPUT in types
		assert types[-1] == EventType.WORKER_COMPLETED

	@pytest.mark.asyncio
	async def test_failure_recorded(self, tmp_path: Path):
		manager = LiveOrchestrationManager(python_config(FAIL_SCRIPT), tmp_path)
		kind = manager.try_reserve(_step())
		record = manager.start_worker(_step(), kind)
		result = await record.task

		assert not result.success
		assert record.exit_code == 3
		assert "boom" in record.error
		assert manager.pool.throttle.running_total == 0

	@pytest.mark.asyncio
	async def test_spawn_failure_publishes_error(self, tmp_path: Path):
		config = python_config(cli_paths={kind: str(tmp_path / "missing") for kind in WorkerKind})
		manager = LiveOrchestrationManager(config, tmp_path)
		sub = manager.events.subscribe()
		kind = manager.try_reserve(_step())
		record = manager.start_worker(_step(), kind)
		result = await record.task

		assert record.state == WorkerState.FAILED
		assert not result.success
		assert any(e.type == EventType.ERROR for e in _drain(sub))
		assert manager.pool.throttle.running_total == 0

	@pytest.mark.asyncio
	async def test_worker_env(self, tmp_path: Path):
		script = "import os; print(os.environ['AGENT_ORCHESTRATOR_DEPTH'], os.environ['NO_COLOR'])"
		manager = LiveOrchestrationManager(
			python_config(script),
			tmp_path,
			worker_env={"AGENT_ORCHESTRATOR_DEPTH": "1"},
		)
		record = manager.start_worker(_step(), manager.try_reserve(_step()))
		await record.task
		assert record.last_output == "1 1"

	@pytest.mark.asyncio
	async def test_status_snapshot(self, tmp_path: Path):
		bus = EventBus()
		manager = LiveOrchestrationManager(python_config(ECHO_SCRIPT), tmp_path, events=bus)
		record = manager.start_worker(_step(), manager.try_reserve(_step()), plan_id="plan-1")
		await record.task

		status = manager.status()
		assert status["active"] == 0
		assert status["by_state"] == {"completed": 1}
		assert status["workers"][0]["step_id"] == "step-1"
		assert status["workers"][0]["plan_id"] == "plan-1"
		assert status["pool"]["running_total"] == 0
		assert manager.forget_finished() == 1
		assert manager.status()["workers"] == []

	@pytest.mark.asyncio
	async def test_reconfigure_only_when_idle(self, tmp_path: Path):
		manager = LiveOrchestrationManager(python_config(LONG_SLEEP_SCRIPT), tmp_path)
		manager.start_worker(_step(), manager.try_reserve(_step()))
		with pytest.raises(ConfigurationError):
			manager.reconfigure(python_config(ECHO_SCRIPT))
		await manager.stop(force=True)
		manager.reconfigure(python_config(ECHO_SCRIPT, max_workers=5))
		assert manager.pool.config.max_workers == 5

	@pytest.mark.asyncio
	async def test_pacing_covers_spawn(self, tmp_path: Path):
		config = python_config(
			"import time; print(time.time())",
			use_worktrees=True,
			throttle_limits=ThrottleLimits(start_delay_ms=300),
		)
		workspaces = SlowWorkspaces(tmp_path, {"plan-1-slow": 0.35})
		manager = LiveOrchestrationManager(config, tmp_path, workspaces=workspaces)

		slow = manager.start_worker(_step("slow"), manager.try_reserve(_step("slow")), plan_id="plan-1")
		fast = manager.start_worker(_step("fast"), manager.try_reserve(_step("fast")), plan_id="plan-1")
		await asyncio.gather(slow.task, fast.task)

		assert sorted(workspaces.created) == ["plan-1-fast", "plan-1-slow"]
		assert slow.launched_at - fast.launched_at >= 0.3 - 1e-6
		assert float(slow.last_output) - float(fast.last_output) >= 0.2


class TestStop:
	@pytest.mark.asyncio
	async def test_stop_terminates_all(self, tmp_path: Path):
		config = python_config(LONG_SLEEP_SCRIPT, max_workers=2)
		manager = LiveOrchestrationManager(config, tmp_path)
		records = [
			manager.start_worker(_step(f"step-{i}"), manager.try_reserve(_step(f"step-{i}")))
			for i in range(2)
		]
		for _ in range(500):
			if all(r.pid for r in records):
				break
			await asyncio.sleep(0.01)

		stopped = await manager.stop()
		assert sorted(stopped) == sorted(r.worker_id for r in records)
		assert all(r.state == WorkerState.CANCELLED for r in records)
		assert manager.active_workers() == []
		assert manager.pool.throttle.running_total == 0

	@pytest.mark.asyncio
	async def test_stop_before_launch(self, tmp_path: Path):
		config = python_config(LONG_SLEEP_SCRIPT)
		manager = LiveOrchestrationManager(config, tmp_path)
		record = manager.start_worker(_step(), manager.try_reserve(_step()))
		# Not yet launched: the task has not run
		await manager.stop_workers(force=True)
		assert record.state == WorkerState.CANCELLED
		assert manager.pool.throttle.running_total == 0

	@pytest.mark.asyncio
	async def test_stop_filters_by_plan(self, tmp_path: Path):
		config = python_config(LONG_SLEEP_SCRIPT, max_workers=2)
		manager = LiveOrchestrationManager(config, tmp_path)
		mine = manager.start_worker(_step("a"), manager.try_reserve(_step("a")), plan_id="mine")
		other = manager.start_worker(_step("b"), manager.try_reserve(_step("b")), plan_id="other")

		stopped = await manager.stop_workers(force=True, plan_id="mine")
		assert stopped == [mine.worker_id]
		assert other.is_active
		await manager.stop(force=True)
		assert not other.is_active


class TestWorktrees:
	@pytest.mark.asyncio
	async def test_success_merges_back_and_cleans_up(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		manager = LiveOrchestrationManager(python_config(FILE_SCRIPT, use_worktrees=True), repo)

		record = manager.start_worker(_step(), manager.try_reserve(_step()), instructions="write out.txt")
		result = await record.task

		assert result.success
		assert record.workspace != repo
		assert not record.workspace.exists()
		assert (repo / "out.txt").read_text() == "from worker\n"
		log = subprocess.run(["git", "log", "--oneline"], cwd=str(repo), capture_output=True, text=True).stdout
		assert "claude: step-1" in log

	@pytest.mark.asyncio
	async def test_merge_conflict_fails_step(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		script = "import pathlib, time; time.sleep(0.5); pathlib.Path('README.md').write_text('# worker\\n')"
		manager = LiveOrchestrationManager(python_config(script, use_worktrees=True), repo)
		sub = manager.events.subscribe()

		record = manager.start_worker(_step(), manager.try_reserve(_step()))
		while record.pid is None and not record.task.done():
			await asyncio.sleep(0.01)
		(repo / "README.md").write_text("# main\n")
		subprocess.run(["git", "commit", "-am", "main edit"], cwd=str(repo), capture_output=True, check=True)
		result = await record.task

		assert not result.success
		assert "conflict" in result.error
		assert record.error == result.error
		assert any(e.type == EventType.ERROR for e in _drain(sub))

	@pytest.mark.asyncio
	async def test_provision_failure(self, tmp_path: Path):
		manager = LiveOrchestrationManager(python_config(ECHO_SCRIPT, use_worktrees=True), tmp_path)
		record = manager.start_worker(_step(), manager.try_reserve(_step()))
		result = await record.task
		assert record.state == WorkerState.FAILED
		assert "Not a git repository" in result.error
		assert manager.pool.throttle.running_total == 0
