"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import platformdirs

from .errors import ConfigurationError
from .plans.models import ExecutionMode, WorkerKind

APP_NAME = "agent-orchestrator"
APP_AUTHOR = "agent-orchestrator"
ENV_PREFIX = "AGENT_ORCHESTRATOR_"
DEPTH_ENV = f"{ENV_PREFIX}DEPTH"


class WorkerStrategy(str, Enum):
	"""How a ready step is assigned to a worker kind."""
	SINGLE = "single"
	ROUND_ROBIN = "round-robin"
	TASK_BASED = "task-based"
	LOAD_BALANCED = "load-balanced"

	@classmethod
	def _missing_(cls, value):
		if isinstance(value, str):
			normalized = value.lower().replace("_", "-")
			aliases = {"single-worker": "single", "roundrobin": "round-robin",
				"taskbased": "task-based", "loadbalanced": "load-balanced"}
			normalized = aliases.get(normalized, normalized)
			for member in cls:
				if member.value == normalized:
					return member
		return None


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	config_file: Path = field(init=False)
	log_dir: Path = field(init=False)

	# User-configurable
	project_path: Path = field(default_factory=Path.cwd)

	def __post_init__(self) -> None:
		self.config_file = self.config_dir / "config.toml"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class ThrottleLimits:
	"""Per-kind concurrency caps plus a global gap between any two launches."""
	max_concurrent: dict[WorkerKind, int] = field(
		default_factory=lambda: {kind: 2 for kind in WorkerKind}
	)
	start_delay_ms: int = 100

	def limit_for(self, kind: WorkerKind) -> int:
		return self.max_concurrent.get(kind, 0)


@dataclass(frozen=True)
class StreamingConfig:
	"""Output streaming settings for worker processes."""
	read_chunk_size: int = 4096
	max_line_length: int = 2048
	heartbeat_interval_s: float = 5.0
	tail_lines: int = 50


DEFAULT_CLI_PATHS: dict[WorkerKind, Optional[str]] = {
	WorkerKind.CLAUDE: "claude",
	WorkerKind.GEMINI: "gemini",
	WorkerKind.SELF: APP_NAME,
	WorkerKind.COPILOT: "gh",
}

DEFAULT_COMMAND_TEMPLATES: dict[WorkerKind, list[str]] = {
	WorkerKind.CLAUDE: ["{cli}", "-p", "{instructions}", "--dangerously-skip-permissions"],
	WorkerKind.GEMINI: ["{cli}", "--prompt", "{instructions}"],
	WorkerKind.SELF: ["{cli}", "execute", "{instructions}", "--mode", "act"],
	WorkerKind.COPILOT: ["{cli}", "copilot", "suggest", "-t", "shell", "{instructions}"],
}


@dataclass(frozen=True)
class OrchestratorConfig:
	"""
	Process-wide orchestration settings.

	Treated as an immutable snapshot per run; use replace() to derive a
	modified copy.
	"""
	cli_paths: dict[WorkerKind, Optional[str]] = field(default_factory=lambda: dict(DEFAULT_CLI_PATHS))
	command_templates: dict[WorkerKind, list[str]] = field(
		default_factory=lambda: {k: list(v) for k, v in DEFAULT_COMMAND_TEMPLATES.items()}
	)
	max_workers: int = 3
	default_worker: WorkerKind = WorkerKind.CLAUDE
	worker_strategy: WorkerStrategy = WorkerStrategy.SINGLE
	enabled_workers: list[WorkerKind] = field(default_factory=lambda: [WorkerKind.CLAUDE])
	use_worktrees: bool = True
	throttle_limits: ThrottleLimits = field(default_factory=ThrottleLimits)
	execution_mode: ExecutionMode = ExecutionMode.ORCHESTRATION
	streaming: StreamingConfig = field(default_factory=StreamingConfig)

	auto_roles: bool = True
	hierarchical: bool = False
	subagent_concurrency: int = 3
	grace_period_s: float = 5.0
	shutdown_timeout_s: float = 10.0
	schedule_tick_s: float = 0.5

	@property
	def max_depth(self) -> int:
		"""How many nested orchestration levels are allowed."""
		return 2 if self.hierarchical else 1

	@classmethod
	def load(cls, config: Optional[Config] = None) -> "OrchestratorConfig":
		"""Load from the [orchestrator] table of config.toml plus env overrides."""
		return load_orchestrator_config(config)

	def replace(self, **changes: Any) -> "OrchestratorConfig":
		return replace(self, **changes)

	def cli_path(self, kind: WorkerKind) -> Optional[str]:
		return self.cli_paths.get(kind)

	def is_enabled(self, kind: WorkerKind) -> bool:
		return kind in self.enabled_workers and bool(self.cli_path(kind))

	def validate(self) -> "OrchestratorConfig":
		"""
		Check the snapshot is usable for dispatch.

		Raises:
			ConfigurationError: On any unusable setting.
		"""
		if not self.enabled_workers:
			raise ConfigurationError("No workers are enabled")
		for kind in self.enabled_workers:
			if not self.cli_path(kind):
				raise ConfigurationError(f"Worker '{kind.value}' is enabled but has no CLI path")
			if kind not in self.command_templates:
				raise ConfigurationError(f"Worker '{kind.value}' has no command template")
			if self.throttle_limits.limit_for(kind) < 1:
				raise ConfigurationError(f"Worker '{kind.value}' is enabled but its throttle limit is 0")
		if self.default_worker not in self.enabled_workers:
			raise ConfigurationError(
				f"Default worker '{self.default_worker.value}' is not in enabled_workers"
			)
		for kind, template in self.command_templates.items():
			if not template or not any("{instructions}" in part for part in template):
				raise ConfigurationError(
					f"Command template for '{kind.value}' must include {{instructions}}"
				)
		if self.max_workers < 1:
			raise ConfigurationError(f"max_workers must be at least 1 (got {self.max_workers})")
		if self.throttle_limits.start_delay_ms < 0:
			raise ConfigurationError("start_delay_ms cannot be negative")
		if any(limit < 0 for limit in self.throttle_limits.max_concurrent.values()):
			raise ConfigurationError("Throttle limits cannot be negative")
		if self.subagent_concurrency < 1:
			raise ConfigurationError("subagent_concurrency must be at least 1")
		if self.grace_period_s < 0 or self.shutdown_timeout_s < 0:
			raise ConfigurationError("Timeouts cannot be negative")
		return self

	@classmethod
	def from_dict(cls, data: dict[str, Any], base: Optional["OrchestratorConfig"] = None) -> "OrchestratorConfig":
		"""
		Build a config from a plain mapping (e.g. the [orchestrator] TOML table).

		Args:
			data: Keys matching field names; nested tables for cli_paths,
				command_templates, throttle and streaming
			base: Config to start from (defaults to OrchestratorConfig())

		Returns:
			New OrchestratorConfig
		"""
		config = base or cls()
		changes: dict[str, Any] = {}
		known = {f.name for f in fields(cls)}
		try:
			for key, val in data.items():
				if key == "cli_paths":
					paths = dict(config.cli_paths)
					for kind, path in val.items():
						paths[WorkerKind(kind)] = path or None
					changes["cli_paths"] = paths
				elif key == "command_templates":
					templates = dict(config.command_templates)
					for kind, template in val.items():
						templates[WorkerKind(kind)] = [str(part) for part in template]
					changes["command_templates"] = templates
				elif key in ("throttle", "throttle_limits"):
					current = changes.get("throttle_limits", config.throttle_limits)
					limits = dict(current.max_concurrent)
					delay = current.start_delay_ms
					for kind, limit in val.items():
						if kind == "start_delay_ms":
							delay = int(limit)
						else:
							limits[WorkerKind(kind)] = int(limit)
					changes["throttle_limits"] = ThrottleLimits(max_concurrent=limits, start_delay_ms=delay)
				elif key == "start_delay_ms":
					current = changes.get("throttle_limits", config.throttle_limits)
					changes["throttle_limits"] = replace(current, start_delay_ms=int(val))
				elif key == "streaming":
					changes["streaming"] = replace(config.streaming, **val)
				elif key == "default_worker":
					changes[key] = WorkerKind(val)
				elif key == "enabled_workers":
					if isinstance(val, str):
						val = [v.strip() for v in val.split(",") if v.strip()]
					changes[key] = [WorkerKind(v) for v in val]
				elif key in ("worker_strategy", "strategy"):
					changes["worker_strategy"] = WorkerStrategy(val)
				elif key in ("execution_mode", "mode"):
					changes["execution_mode"] = ExecutionMode(val)
				elif key in ("max_workers", "max_instances", "subagent_concurrency"):
					changes["max_workers" if key == "max_instances" else key] = int(val)
				elif key in ("grace_period_s", "shutdown_timeout_s", "schedule_tick_s"):
					changes[key] = float(val)
				elif key in ("use_worktrees", "auto_roles", "hierarchical"):
					changes[key] = _as_bool(val)
				elif key in known:
					changes[key] = val
				else:
					raise ConfigurationError(f"Unknown orchestrator option: {key}")
		except (ValueError, TypeError) as e:
			raise ConfigurationError(f"Invalid orchestrator option: {e}") from e
		return replace(config, **changes)

	def to_dict(self) -> dict[str, Any]:
		"""
		Plain mapping suitable for TOML or JSON output.

		Carries every setting from_dict() reads, so from_dict(to_dict())
		gives back an equal config. A disabled CLI path is written as "".
		"""
		return {
			"max_workers": self.max_workers,
			"default_worker": self.default_worker.value,
			"worker_strategy": self.worker_strategy.value,
			"enabled_workers": [k.value for k in self.enabled_workers],
			"use_worktrees": self.use_worktrees,
			"execution_mode": self.execution_mode.value,
			"auto_roles": self.auto_roles,
			"hierarchical": self.hierarchical,
			"subagent_concurrency": self.subagent_concurrency,
			"grace_period_s": self.grace_period_s,
			"shutdown_timeout_s": self.shutdown_timeout_s,
			"schedule_tick_s": self.schedule_tick_s,
			"cli_paths": {k.value: v or "" for k, v in self.cli_paths.items()},
			"command_templates": {k.value: list(v) for k, v in self.command_templates.items()},
			"throttle": {
				"start_delay_ms": self.throttle_limits.start_delay_ms,
				**{k.value: v for k, v in self.throttle_limits.max_concurrent.items()},
			},
			"streaming": {
				"read_chunk_size": self.streaming.read_chunk_size,
				"max_line_length": self.streaming.max_line_length,
				"heartbeat_interval_s": self.streaming.heartbeat_interval_s,
				"tail_lines": self.streaming.tail_lines,
			},
		}


def _as_bool(val: Any) -> bool:
	if isinstance(val, bool):
		return val
	if isinstance(val, str):
		return val.strip().lower() in ("1", "true", "yes", "on")
	return bool(val)


def _apply_env_overrides(config: Config) -> Config:
	"""Apply AGENT_ORCHESTRATOR_* path overrides."""
	env_map = {
		f"{ENV_PREFIX}CONFIG_DIR": "config_dir",
		f"{ENV_PREFIX}DATA_DIR": "data_dir",
		f"{ENV_PREFIX}PROJECT_PATH": "project_path",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _read_toml(path: Path) -> dict[str, Any]:
	if not path.exists():
		return {}
	try:
		with open(path, "rb") as f:
			return tomllib.load(f)
	except tomllib.TOMLDecodeError as e:
		raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _apply_toml(config: Config) -> Config:
	"""Apply top-level config.toml overrides if the file exists."""
	data = _read_toml(config.config_file)

	path_fields = {"config_dir", "data_dir", "project_path"}
	for key, val in data.items():
		if key in path_fields:
			setattr(config, key, Path(os.path.expanduser(val)))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_env_overrides(config)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


def _orchestrator_env_overrides() -> dict[str, Any]:
	"""Collect AGENT_ORCHESTRATOR_* orchestration overrides from the environment."""
	env_map = {
		f"{ENV_PREFIX}MAX_WORKERS": "max_workers",
		f"{ENV_PREFIX}DEFAULT_WORKER": "default_worker",
		f"{ENV_PREFIX}STRATEGY": "worker_strategy",
		f"{ENV_PREFIX}ENABLED_WORKERS": "enabled_workers",
		f"{ENV_PREFIX}USE_WORKTREES": "use_worktrees",
		f"{ENV_PREFIX}EXECUTION_MODE": "execution_mode",
		f"{ENV_PREFIX}START_DELAY_MS": "start_delay_ms",
	}
	overrides: dict[str, Any] = {}
	for env_key, key in env_map.items():
		val = os.getenv(env_key)
		if val:
			overrides[key] = val

	paths = {}
	for kind in WorkerKind:
		val = os.getenv(f"{ENV_PREFIX}{kind.name}_PATH")
		if val:
			paths[kind.value] = val
	if paths:
		overrides["cli_paths"] = paths
	return overrides


def load_orchestrator_config(config: Optional[Config] = None) -> OrchestratorConfig:
	"""
	Load orchestration settings: env vars > [orchestrator] in config.toml > defaults.

	Raises:
		ConfigurationError: If the merged settings are invalid.
	"""
	config = config or get_config()
	table = _read_toml(config.config_file).get("orchestrator", {})
	orch = OrchestratorConfig.from_dict(table)
	orch = OrchestratorConfig.from_dict(_orchestrator_env_overrides(), base=orch)
	return orch.validate()


def _toml_value(val: Any) -> str:
	if isinstance(val, bool):
		return "true" if val else "false"
	if isinstance(val, (int, float)):
		return str(val)
	if isinstance(val, (list, tuple)):
		return "[" + ", ".join(_toml_value(v) for v in val) + "]"
	text = str(val).replace("\\", "\\\\").replace('"', '\\"')
	return f'"{text}"'


def _render_toml(data: dict[str, Any]) -> str:
	"""Render scalars, arrays and up to two levels of tables."""
	lines: list[str] = []
	tables: list[tuple[str, dict]] = []
	for key, val in data.items():
		if isinstance(val, dict):
			tables.append((key, val))
		else:
			lines.append(f"{key} = {_toml_value(val)}")

	for name, table in tables:
		lines.extend(["", f"[{name}]"])
		nested = []
		for key, val in table.items():
			if isinstance(val, dict):
				nested.append((key, val))
			else:
				lines.append(f'"{key}" = {_toml_value(val)}' if "-" in key else f"{key} = {_toml_value(val)}")
		for key, sub in nested:
			lines.extend(["", f"[{name}.{key}]"])
			for sub_key, sub_val in sub.items():
				lines.append(f'"{sub_key}" = {_toml_value(sub_val)}')
	return "\n".join(lines).lstrip("\n") + "\n"


def save_orchestrator_config(orch: OrchestratorConfig, config: Optional[Config] = None) -> Path:
	"""Write the [orchestrator] table to config.toml, keeping other top-level keys."""
	config = config or get_config()
	data = _read_toml(config.config_file)
	data["orchestrator"] = orch.to_dict()
	config.config_file.parent.mkdir(parents=True, exist_ok=True)
	config.config_file.write_text(
		"# agent-orchestrator configuration\n\n" + _render_toml(data),
		encoding="utf-8",
	)
	return config.config_file


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
