"""Tests for the streaming worker.

Workers run real Python subprocesses in place of agent CLIs.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from agent_orchestrator.config import StreamingConfig
from agent_orchestrator.orchestrator.events import EventType, OrchestratorEvent
from agent_orchestrator.orchestrator.worker import StreamingWorker, WorkerState, build_command
from agent_orchestrator.plans.models import WorkerKind

from .helpers import FAIL_SCRIPT

IGNORE_TERM_SCRIPT = (
	"import signal, time; "
	"signal.signal(signal.SIGTERM, signal.SIG_IGN); "
	"print('ready', flush=True); "
	"time.sleep(30)"
)
LONG_SLEEP_SCRIPT = "import time; print('ready', flush=True); time.sleep(30)"


def _worker(tmp_path: Path, script: str, events: list, **streaming) -> StreamingWorker:
	return StreamingWorker(
		worker_id="worker-1",
		step_id="step-1",
		kind=WorkerKind.CLAUDE,
		command=[sys.executable, "-c", script],
		workspace=tmp_path,
		emit=events.append,
		streaming=StreamingConfig(**streaming),
		plan_id="plan-1",
	)


def _of_type(events: list[OrchestratorEvent], event_type: EventType) -> list[OrchestratorEvent]:
	return [e for e in events if e.type == event_type]


async def _wait_for_output(events: list, text: str, timeout: float = 5.0) -> None:
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not any(e.type == EventType.WORKER_OUTPUT and e.message == text for e in events):
		if loop.time() > deadline:
			raise AssertionError(f"worker never printed {text!r}")
		await asyncio.sleep(0.01)


def test_build_command_keeps_argv_boundaries():
	command = build_command(["{cli}", "-p", "{instructions}"], "/usr/bin/claude", "fix it; rm -rf /")
	assert command == ["/usr/bin/claude", "-p", "fix it; rm -rf /"]


class TestStreamingWorker:
	@pytest.mark.asyncio
	async def test_streams_output(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, "print('one'); print('two')", events)
		result = await worker.run()

		assert result.success
		assert result.state == WorkerState.COMPLETED
		assert result.exit_code == 0
		assert [e.message for e in _of_type(events, EventType.WORKER_OUTPUT)] == ["one", "two"]
		assert result.output == "one\ntwo"
		assert all(e.worker_id == "worker-1" and e.plan_id == "plan-1" for e in events)

		states = [e.data["state"] for e in _of_type(events, EventType.WORKER_STATE_CHANGED)]
		assert states == ["running", "completed"]
		assert len(_of_type(events, EventType.WORKER_COMPLETED)) == 1

	@pytest.mark.asyncio
	async def test_runs_in_workspace(self, tmp_path: Path):
		events: list = []
		result = await _worker(tmp_path, "import os; print(os.getcwd())", events).run()
		assert Path(result.output).resolve() == tmp_path.resolve()

	@pytest.mark.asyncio
	async def test_stderr_tagged(self, tmp_path: Path):
		events: list = []
		await _worker(tmp_path, "import sys; sys.stderr.write('warn\\n')", events).run()
		output = _of_type(events, EventType.WORKER_OUTPUT)
		assert output[0].message == "warn"
		assert output[0].data["is_stderr"] is True

	@pytest.mark.asyncio
	async def test_nonzero_exit(self, tmp_path: Path):
		events: list = []
		result = await _worker(tmp_path, FAIL_SCRIPT, events).run()

		assert not result.success
		assert result.exit_code == 3
		assert "exited with code 3: boom" in result.error
		completed = _of_type(events, EventType.WORKER_COMPLETED)[0]
		assert completed.data["success"] is False
		assert completed.data["exit_code"] == 3

	@pytest.mark.asyncio
	async def test_spawn_error(self, tmp_path: Path):
		events: list = []
		worker = StreamingWorker(
			worker_id="worker-1",
			step_id="step-1",
			kind=WorkerKind.GEMINI,
			command=[str(tmp_path / "no-such-binary")],
			workspace=tmp_path,
			emit=events.append,
		)
		result = await worker.run()

		assert result.state == WorkerState.FAILED
		assert not result.success
		assert "Failed to start" in result.error
		assert worker.pid is None

	@pytest.mark.asyncio
	async def test_long_lines_split(self, tmp_path: Path):
		events: list = []
		await _worker(tmp_path, "print('x' * 25)", events, max_line_length=10).run()
		lines = [e.message for e in _of_type(events, EventType.WORKER_OUTPUT)]
		assert lines == ["x" * 10, "x" * 10, "x" * 5]

	@pytest.mark.asyncio
	async def test_partial_last_line(self, tmp_path: Path):
		events: list = []
		await _worker(tmp_path, "import sys; sys.stdout.write('no newline')", events).run()
		assert [e.message for e in _of_type(events, EventType.WORKER_OUTPUT)] == ["no newline"]

	@pytest.mark.asyncio
	async def test_heartbeat(self, tmp_path: Path):
		events: list = []
		await _worker(tmp_path, "import time; time.sleep(0.4)", events, heartbeat_interval_s=0.05).run()
		heartbeats = _of_type(events, EventType.WORKER_HEARTBEAT)
		assert heartbeats
		assert heartbeats[0].data["elapsed_ms"] > 0

	@pytest.mark.asyncio
	async def test_graceful_cancel(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, LONG_SLEEP_SCRIPT, events)
		task = asyncio.create_task(worker.run())
		await _wait_for_output(events, "ready")

		await worker.cancel(grace_period=5.0)
		result = await asyncio.wait_for(task, timeout=5)

		assert result.state == WorkerState.CANCELLED
		assert result.cancelled
		assert not result.success
		assert result.exit_code == -15

	@pytest.mark.asyncio
	async def test_forced_after_grace_period(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, IGNORE_TERM_SCRIPT, events)
		task = asyncio.create_task(worker.run())
		await _wait_for_output(events, "ready")

		loop = asyncio.get_running_loop()
		started = loop.time()
		await worker.cancel(grace_period=0.3)
		result = await asyncio.wait_for(task, timeout=5)

		assert loop.time() - started >= 0.3
		assert result.state == WorkerState.CANCELLED
		assert result.exit_code == -9

	@pytest.mark.asyncio
	async def test_force_cancel(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, IGNORE_TERM_SCRIPT, events)
		task = asyncio.create_task(worker.run())
		await _wait_for_output(events, "ready")

		await worker.cancel(force=True)
		result = await asyncio.wait_for(task, timeout=5)
		assert result.exit_code == -9
		assert result.state == WorkerState.CANCELLED

	@pytest.mark.asyncio
	async def test_cancel_before_start(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, LONG_SLEEP_SCRIPT, events)
		await worker.cancel()
		result = await worker.run()
		assert result.state == WorkerState.CANCELLED
		assert worker.pid is None

	@pytest.mark.asyncio
	async def test_start_spawns_before_run(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, "print('hi')", events)
		await worker.start()
		pid = worker.pid

		assert pid is not None
		assert worker.state == WorkerState.RUNNING
		await worker.start()
		assert worker.pid == pid

		result = await worker.run()
		assert result.success
		assert worker.pid == pid
		assert len(_of_type(events, EventType.WORKER_STATE_CHANGED)) == 2

	@pytest.mark.asyncio
	async def test_start_keeps_spawn_error_for_run(self, tmp_path: Path):
		events: list = []
		worker = _worker(tmp_path, "print('hi')", events)
		worker.command = [str(tmp_path / "no-such-binary")]
		await worker.start()
		assert worker.pid is None
		assert worker.state == WorkerState.STARTING

		result = await worker.run()
		assert result.state == WorkerState.FAILED
		assert "Failed to start" in result.error
