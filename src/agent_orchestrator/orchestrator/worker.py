"""
Streaming Worker - runs one external CLI process for one plan step.

The worker owns its process handle. It streams stdout/stderr line by
line as events, emits heartbeats while the process is alive, and
reports every state transition through its emit callback instead of
touching shared orchestrator state. Cancellation is graceful first
(SIGTERM to the process group) and forced after a grace period
(SIGKILL); either way the process group is reaped.
"""

import asyncio
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..config import StreamingConfig
from ..errors import CancellationError, SpawnError, WorkerRuntimeError
from ..plans.models import WorkerKind
from .events import EventType, OrchestratorEvent

logger = logging.getLogger(__name__)

WORKER_ENV = {"NO_COLOR": "1", "FORCE_COLOR": "0"}


class WorkerState(str, Enum):
	"""Lifecycle of a worker process."""
	STARTING = "starting"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


WORKER_TERMINAL = frozenset({WorkerState.COMPLETED, WorkerState.FAILED, WorkerState.CANCELLED})


@dataclass
class WorkerResult:
	"""Final outcome of a worker run."""
	worker_id: str
	state: WorkerState
	success: bool
	exit_code: Optional[int] = None
	output: str = ""
	error: Optional[str] = None
	duration_ms: int = 0

	@property
	def cancelled(self) -> bool:
		return self.state == WorkerState.CANCELLED


def build_command(template: list[str], cli_path: str, instructions: str) -> list[str]:
	"""Render a command template; each argv element is formatted separately, no shell involved."""
	return [
		part.replace("{cli}", cli_path).replace("{instructions}", instructions)
		for part in template
	]


@dataclass
class StreamingWorker:
	"""One external process executing one dispatched step."""
	worker_id: str
	step_id: str
	kind: WorkerKind
	command: list[str]
	workspace: Path
	emit: Callable[[OrchestratorEvent], None]
	streaming: StreamingConfig = field(default_factory=StreamingConfig)
	env: dict[str, str] = field(default_factory=dict)
	plan_id: Optional[str] = None

	state: WorkerState = field(default=WorkerState.STARTING, init=False)
	pid: Optional[int] = field(default=None, init=False)

	def __post_init__(self) -> None:
		self._process: Optional[asyncio.subprocess.Process] = None
		self._start_error: Optional[Exception] = None
		self._cancel_requested = False
		self._tail: deque[str] = deque(maxlen=self.streaming.tail_lines)
		self._stderr_tail: deque[str] = deque(maxlen=self.streaming.tail_lines)
		self._started = time.monotonic()

	# -- events ------------------------------------------------------------

	def _event(self, event_type: EventType, message: str = "", **data) -> None:
		self.emit(OrchestratorEvent(
			type=event_type,
			message=message,
			plan_id=self.plan_id,
			step_id=self.step_id,
			worker_id=self.worker_id,
			data=data,
		))

	def _set_state(self, state: WorkerState, message: str = "") -> None:
		previous = self.state
		self.state = state
		self._event(
			EventType.WORKER_STATE_CHANGED,
			message or state.value,
			previous=previous.value,
			state=state.value,
		)

	def _elapsed_ms(self) -> int:
		return int((time.monotonic() - self._started) * 1000)

	# -- process handling --------------------------------------------------

	async def _spawn(self) -> asyncio.subprocess.Process:
		env = {**os.environ, **WORKER_ENV, **self.env}
		try:
			return await asyncio.create_subprocess_exec(
				*self.command,
				cwd=str(self.workspace),
				env=env,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				start_new_session=True,
			)
		except OSError as e:
			raise SpawnError(f"Failed to start {self.command[0]}: {e}") from e

	async def _pump(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
		"""Read a pipe in chunks and emit each line as soon as it is complete."""
		buffer = bytearray()
		limit = self.streaming.max_line_length
		while True:
			chunk = await stream.read(self.streaming.read_chunk_size)
			if not chunk:
				break
			buffer.extend(chunk)
			while True:
				newline = buffer.find(b"\n")
				if newline == -1:
					if len(buffer) >= limit:
						self._emit_line(bytes(buffer[:limit]), is_stderr)
						del buffer[:limit]
						continue
					break
				line = bytes(buffer[:newline])
				del buffer[:newline + 1]
				while len(line) > limit:
					self._emit_line(line[:limit], is_stderr)
					line = line[limit:]
				self._emit_line(line, is_stderr)
		if buffer:
			self._emit_line(bytes(buffer), is_stderr)

	def _emit_line(self, raw: bytes, is_stderr: bool) -> None:
		line = raw.decode("utf-8", errors="replace").rstrip("\r")
		self._tail.append(line)
		if is_stderr:
			self._stderr_tail.append(line)
		self._event(EventType.WORKER_OUTPUT, line, is_stderr=is_stderr)

	async def _heartbeat(self) -> None:
		interval = self.streaming.heartbeat_interval_s
		while True:
			await asyncio.sleep(interval)
			self._event(
				EventType.WORKER_HEARTBEAT,
				"Worker is active...",
				elapsed_ms=self._elapsed_ms(),
			)

	def _signal_group(self, sig: int) -> None:
		if self.pid is None:
			return
		try:
			os.killpg(self.pid, sig)
		except (ProcessLookupError, PermissionError):
			pass

	async def _wait_for_output(self, readers: list[asyncio.Task]) -> None:
		"""Let the pipe readers drain; stragglers holding the pipe open are cut off."""
		_, pending = await asyncio.wait(readers, timeout=self.streaming.heartbeat_interval_s)
		for task in pending:
			task.cancel()
		for task in pending:
			try:
				await task
			except asyncio.CancelledError:
				pass

	# -- public API --------------------------------------------------------

	async def start(self) -> None:
		"""
		Spawn the process without waiting for it.

		A spawn failure or an earlier cancel is kept and reported by run().
		Calling start() again is a no-op.
		"""
		if self._process is not None or self._start_error is not None:
			return
		if self._cancel_requested:
			self._start_error = CancellationError("Cancelled before start")
			return
		try:
			self._process = await self._spawn()
		except SpawnError as e:
			self._start_error = e
			return
		self.pid = self._process.pid
		self._set_state(WorkerState.RUNNING, f"Started pid {self.pid}")
		if self._cancel_requested:
			self._signal_group(signal.SIGKILL)

	async def run(self) -> WorkerResult:
		"""
		Run the process to completion, spawning it first if start() was not called.

		Never raises for worker-local failures; they become the
		returned result and the final state.

		Returns:
			WorkerResult
		"""
		heartbeat: Optional[asyncio.Task] = None
		try:
			await self.start()
			if self._start_error is not None:
				raise self._start_error

			heartbeat = asyncio.create_task(self._heartbeat())
			readers = [
				asyncio.create_task(self._pump(self._process.stdout, False)),
				asyncio.create_task(self._pump(self._process.stderr, True)),
			]
			exit_code = await self._process.wait()
			await self._wait_for_output(readers)
			# Reap anything the process left behind in its group
			self._signal_group(signal.SIGKILL)

			if self._cancel_requested:
				raise CancellationError(f"Cancelled (exit code {exit_code})")
			if exit_code != 0:
				detail = self._stderr_tail[-1] if self._stderr_tail else ""
				message = f"{self.kind.value} worker exited with code {exit_code}"
				raise WorkerRuntimeError(f"{message}: {detail}" if detail else message)

			self._set_state(WorkerState.COMPLETED)
			return self._finish(True, WorkerState.COMPLETED, exit_code=exit_code)

		except SpawnError as e:
			logger.warning(f"Worker {self.worker_id} failed to spawn: {e}")
			self._set_state(WorkerState.FAILED, str(e))
			return self._finish(False, WorkerState.FAILED, error=str(e))
		except WorkerRuntimeError as e:
			logger.warning(f"Worker {self.worker_id} failed: {e}")
			self._set_state(WorkerState.COMPLETED, str(e))
			return self._finish(False, WorkerState.COMPLETED, exit_code=self._exit_code(), error=str(e))
		except CancellationError as e:
			logger.info(f"Worker {self.worker_id} cancelled")
			self._set_state(WorkerState.CANCELLED, str(e))
			return self._finish(False, WorkerState.CANCELLED, exit_code=self._exit_code(), error=str(e))
		finally:
			if self._process is not None and self._process.returncode is None:
				self._signal_group(signal.SIGKILL)
			if heartbeat is not None:
				heartbeat.cancel()
				try:
					await heartbeat
				except asyncio.CancelledError:
					pass

	def _exit_code(self) -> Optional[int]:
		return self._process.returncode if self._process else None

	def _finish(
		self,
		success: bool,
		state: WorkerState,
		exit_code: Optional[int] = None,
		error: Optional[str] = None,
	) -> WorkerResult:
		result = WorkerResult(
			worker_id=self.worker_id,
			state=state,
			success=success,
			exit_code=exit_code,
			output="\n".join(self._tail),
			error=error,
			duration_ms=self._elapsed_ms(),
		)
		self._event(
			EventType.WORKER_COMPLETED,
			"succeeded" if success else (error or "failed"),
			success=success,
			state=state.value,
			exit_code=exit_code,
			duration_ms=result.duration_ms,
		)
		return result

	async def cancel(self, force: bool = False, grace_period: float = 5.0) -> None:
		"""
		Stop the process.

		Args:
			force: Kill immediately instead of terminating gracefully
			grace_period: Seconds to wait after SIGTERM before SIGKILL
		"""
		self._cancel_requested = True
		process = self._process
		if process is None or process.returncode is not None:
			return

		if force:
			self._signal_group(signal.SIGKILL)
		else:
			self._signal_group(signal.SIGTERM)
			try:
				await asyncio.wait_for(process.wait(), timeout=grace_period)
			except asyncio.TimeoutError:
				logger.info(f"Worker {self.worker_id} ignored SIGTERM for {grace_period}s; killing")
				self._signal_group(signal.SIGKILL)
		await process.wait()
