"""Workspace manager - one git worktree per running step."""

import asyncio
import logging
import re
from pathlib import Path

from ..errors import WorkspaceError

logger = logging.getLogger(__name__)

WORKSPACE_DIR = ".agent-orchestrator-workspaces"
BRANCH_PREFIX = "agent-orchestrator"


async def _run_git(args: list[str], cwd: Path, timeout: int = 30) -> tuple[str, str, int]:
	"""Run a git command and return (stdout, stderr, returncode)."""
	proc = await asyncio.create_subprocess_exec(
		"git", *args,
		stdout=asyncio.subprocess.PIPE,
		stderr=asyncio.subprocess.PIPE,
		cwd=str(cwd),
	)
	try:
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		proc.kill()
		await proc.wait()
		return ("", f"git {args[0]} timed out after {timeout}s", -1)
	return (
		stdout.decode().strip(),
		stderr.decode().strip(),
		proc.returncode or 0,
	)


async def find_git_root(project_path: Path) -> Path:
	"""Find the git root for a project path."""
	try:
		stdout, stderr, rc = await _run_git(["rev-parse", "--show-toplevel"], project_path)
	except (FileNotFoundError, NotADirectoryError) as e:
		raise WorkspaceError(f"Cannot run git in {project_path}: {e}") from e
	if rc != 0:
		raise WorkspaceError(f"Not a git repository: {project_path} ({stderr})")
	return Path(stdout)


def _slugify(text: str, max_len: int = 60) -> str:
	"""Convert text to a filesystem- and ref-safe slug."""
	slug = text.lower()
	slug = re.sub(r"[^a-z0-9]+", "-", slug)
	slug = slug.strip("-")
	if len(slug) > max_len:
		slug = slug[:max_len].rstrip("-")
	return slug or "step"


class WorkspaceManager:
	"""
	Creates and tears down isolated git worktrees for steps.

	Each step gets ``<repo>/.agent-orchestrator-workspaces/<key>`` on
	branch ``agent-orchestrator/<key>``, where the manager keys a step as
	``<plan>-<step>``. A path is never handed out twice while it is active.
	"""

	def __init__(self, project_path: Path):
		self.project_path = Path(project_path)
		self._git_root: Path | None = None
		self._active: dict[str, Path] = {}
		self._lock = asyncio.Lock()

	async def git_root(self) -> Path:
		if self._git_root is None:
			self._git_root = await find_git_root(self.project_path)
		return self._git_root

	def workspace_path(self, git_root: Path, step_id: str) -> Path:
		return git_root / WORKSPACE_DIR / _slugify(step_id)

	def branch_name(self, step_id: str) -> str:
		return f"{BRANCH_PREFIX}/{_slugify(step_id)}"

	def list_workspaces(self) -> dict[str, Path]:
		return dict(self._active)

	def get_workspace(self, step_id: str) -> Path | None:
		return self._active.get(step_id)

	async def create(self, step_id: str) -> Path:
		"""
		Create a fresh worktree for a step.

		Stale worktrees and branches left by earlier runs are removed first.

		Args:
			step_id: Step the workspace belongs to

		Returns:
			Path of the new worktree

		Raises:
			WorkspaceError: If the path is in use or git fails
		"""
		async with self._lock:
			if step_id in self._active:
				raise WorkspaceError(f"Workspace for step {step_id} is already in use: {self._active[step_id]}")
			git_root = await self.git_root()
			path = self.workspace_path(git_root, step_id)
			if path in self._active.values():
				raise WorkspaceError(f"Workspace path already in use: {path}")
			branch = self.branch_name(step_id)

			await _run_git(["worktree", "prune"], git_root)
			if path.exists():
				logger.info(f"Removing stale worktree {path}")
				await _run_git(["worktree", "remove", "--force", str(path)], git_root)
			await _run_git(["branch", "-D", branch], git_root)

			path.parent.mkdir(parents=True, exist_ok=True)
			_, stderr, rc = await _run_git(["worktree", "add", str(path), "-b", branch], git_root)
			if rc != 0:
				raise WorkspaceError(f"Failed to create worktree for {step_id}: {stderr}")

			self._active[step_id] = path
			logger.info(f"Created worktree {path} on {branch}")
			return path

	async def cleanup(self, step_id: str) -> bool:
		"""
		Remove a step's worktree and branch. Failures are logged, not raised.

		Returns:
			True if everything was removed cleanly
		"""
		async with self._lock:
			path = self._active.pop(step_id, None)
			if path is None:
				return False
			git_root = await self.git_root()
			ok = True
			_, stderr, rc = await _run_git(["worktree", "remove", "--force", str(path)], git_root)
			if rc != 0:
				logger.warning(f"Leaked worktree {path}: {stderr}")
				ok = False
			_, stderr, rc = await _run_git(["branch", "-D", self.branch_name(step_id)], git_root)
			if rc != 0:
				logger.warning(f"Could not delete branch for {step_id}: {stderr}")
				ok = False
			return ok

	async def cleanup_all(self) -> int:
		"""Remove every active worktree. Returns how many were removed cleanly."""
		removed = 0
		for step_id in list(self._active):
			if await self.cleanup(step_id):
				removed += 1
		return removed

	async def merge(self, step_id: str, message: str | None = None) -> dict[str, object]:
		"""
		Commit a step's worktree changes and merge its branch into the current branch.

		Returns:
			Dict with success, conflict flag, and git output
		"""
		path = self._active.get(step_id)
		if path is None:
			raise WorkspaceError(f"No active workspace for step {step_id}")
		git_root = await self.git_root()

		# Merges touch the main checkout; one at a time
		async with self._lock:
			status, _, _ = await _run_git(["status", "--porcelain"], path)
			if status:
				await _run_git(["add", "-A"], path)
				_, stderr, rc = await _run_git(
					["commit", "-m", message or f"Step {step_id} completed"],
					path,
				)
				if rc != 0:
					return {"success": False, "conflict": False, "output": stderr}

			stdout, stderr, rc = await _run_git(
				["merge", "--no-edit", self.branch_name(step_id)],
				git_root,
			)
			if rc == 0:
				return {"success": True, "conflict": False, "output": stdout}

			conflict = "CONFLICT" in stdout or "CONFLICT" in stderr
			if conflict:
				await _run_git(["merge", "--abort"], git_root)
			return {"success": False, "conflict": conflict, "output": stderr or stdout}
