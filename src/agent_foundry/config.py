"""Configuration loader for agent-foundry.

Loads ``agent-foundry.yaml`` and exposes frozen dataclasses that are threaded
through component constructors. Nothing here is global: tests build their own
configs directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("agent-foundry.yaml")

DEFAULT_BACKEND = "claude"
DEFAULT_EXECUTABLES = {"claude": "claude", "cursor": "cursor-agent"}
DEFAULT_EXECUTABLE = DEFAULT_EXECUTABLES[DEFAULT_BACKEND]
DEFAULT_CACHE_ROOT = Path(".agent-foundry/worktrees")
DEFAULT_DATABASE = Path(".agent-foundry/state.db")
DEFAULT_MAX_ITERATIONS = 3
DEFAULT_TEST_TIMEOUT = 300.0
SEVEN_DAYS = 7 * 24 * 60 * 60

ENV_EXECUTABLE = "AGENT_FOUNDRY_CLAUDE_PATH"
ENV_MODEL = "AGENT_FOUNDRY_MODEL"


class OrchestratorConfigError(ValueError):
    """Raised when the configuration file is invalid."""


def _check_backend(name: str) -> None:
    if name not in DEFAULT_EXECUTABLES:
        raise OrchestratorConfigError(
            f"agent backend must be one of {', '.join(DEFAULT_EXECUTABLES)}, got {name!r}"
        )


@dataclass(frozen=True)
class AgentOverride:
    """Per-agent-type override of backend, executable and model."""

    backend: str | None = None
    executable: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        if self.backend is not None:
            _check_backend(self.backend)


@dataclass(frozen=True)
class AgentConfig:
    """How to launch the external coding agent."""

    backend: str = DEFAULT_BACKEND
    executable: str = DEFAULT_EXECUTABLE
    model: str | None = None
    skip_permissions: bool = True
    extra_args: tuple[str, ...] = ()
    overrides: dict[str, AgentOverride] = field(default_factory=dict)
    heartbeat_timeout: float | None = None
    terminate_grace: float = 5.0

    def __post_init__(self) -> None:
        _check_backend(self.backend)

    def for_type(self, agent_type: str) -> AgentConfig:
        """Return this config with the override for ``agent_type`` applied."""
        override = self.overrides.get(str(agent_type))
        if override is None:
            return self
        backend = override.backend or self.backend
        executable = override.executable
        if executable is None:
            executable = self.executable if backend == self.backend else DEFAULT_EXECUTABLES[backend]
        return replace(self, backend=backend, executable=executable, model=override.model or self.model)


@dataclass(frozen=True)
class PoolConfig:
    """Worktree cache settings."""

    cache_root: Path = DEFAULT_CACHE_ROOT
    branch_prefix: str = "agent/"
    remote: str = "origin"
    max_total_bytes: int | None = None
    max_per_repo: int = 10
    max_age_seconds: float | None = SEVEN_DAYS
    lock_timeout: float = 60.0


@dataclass(frozen=True)
class WorkflowConfig:
    """TDD engine settings."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    skip_spec: bool = False
    skip_refactor: bool = False
    review: bool = False
    test_command: tuple[str, ...] | None = None
    test_timeout: float = DEFAULT_TEST_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise OrchestratorConfigError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.test_timeout <= 0:
            raise OrchestratorConfigError(f"test_timeout must be > 0, got {self.test_timeout}")


@dataclass(frozen=True)
class CoordinatorConfig:
    """Coordinator settings."""

    max_concurrent: int = 4
    mode: str = "tdd"
    base_ref: str = "main"
    strict_cross_repo: bool = False
    poll_interval: float = 0.5

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise OrchestratorConfigError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.mode not in ("single", "tdd"):
            raise OrchestratorConfigError(f"mode must be 'single' or 'tdd', got {self.mode!r}")


@dataclass(frozen=True)
class StorageConfig:
    """Persistence settings."""

    database: Path = DEFAULT_DATABASE


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete configuration."""

    agent: AgentConfig = field(default_factory=AgentConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def resolve_paths(self, project_root: Path) -> OrchestratorConfig:
        """Make relative cache and database paths absolute under ``project_root``."""
        cache_root = self.pool.cache_root
        if not cache_root.is_absolute():
            cache_root = project_root / cache_root
        database = self.storage.database
        if not database.is_absolute():
            database = project_root / database
        return replace(
            self,
            pool=replace(self.pool, cache_root=cache_root),
            storage=replace(self.storage, database=database),
        )


def load_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
    environ: dict[str, str] | None = None,
) -> OrchestratorConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the config file. Defaults to agent-foundry.yaml
            under the project root.
        project_root: Project root directory. Defaults to the current directory.
        environ: Environment mapping used for overrides. Defaults to os.environ.

    Returns:
        OrchestratorConfig with relative paths resolved against project_root.

    Raises:
        OrchestratorConfigError: If the file is not valid YAML or has bad values.
    """
    root = project_root or Path.cwd()
    path = config_path or (root / DEFAULT_CONFIG_PATH)
    env = os.environ if environ is None else environ

    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise OrchestratorConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise OrchestratorConfigError(f"Config must be a mapping, got {type(data).__name__}")
        try:
            config = parse_config(data)
        except OrchestratorConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise OrchestratorConfigError(f"Invalid value in {path}: {e}") from e
    elif config_path is not None:
        raise OrchestratorConfigError(f"Config file not found: {path}")
    else:
        config = OrchestratorConfig()

    config = _apply_env(config, env)
    return config.resolve_paths(root)


def parse_config(data: dict[str, Any]) -> OrchestratorConfig:
    """Parse configuration from already-loaded YAML data."""
    agent_data = _section(data, "agent")
    overrides = {}
    for name, value in _section(agent_data, "overrides").items():
        if not isinstance(value, dict):
            raise OrchestratorConfigError(f"agent.overrides.{name} must be a mapping")
        overrides[str(name)] = AgentOverride(
            backend=value.get("backend"),
            executable=value.get("executable"),
            model=value.get("model"),
        )
    backend = str(agent_data.get("backend", DEFAULT_BACKEND))
    _check_backend(backend)
    agent = AgentConfig(
        backend=backend,
        executable=str(agent_data.get("executable", DEFAULT_EXECUTABLES[backend])),
        model=agent_data.get("model"),
        skip_permissions=bool(agent_data.get("skip_permissions", True)),
        extra_args=tuple(str(a) for a in agent_data.get("extra_args", [])),
        overrides=overrides,
        heartbeat_timeout=_optional_float(agent_data, "heartbeat_timeout"),
        terminate_grace=float(agent_data.get("terminate_grace", 5.0)),
    )

    pool_data = _section(data, "pool")
    pool = PoolConfig(
        cache_root=Path(pool_data.get("cache_root", DEFAULT_CACHE_ROOT)),
        branch_prefix=str(pool_data.get("branch_prefix", "agent/")),
        remote=str(pool_data.get("remote", "origin")),
        max_total_bytes=_optional_int(pool_data, "max_total_bytes"),
        max_per_repo=int(pool_data.get("max_per_repo", 10)),
        max_age_seconds=_optional_float(pool_data, "max_age_seconds", SEVEN_DAYS),
        lock_timeout=float(pool_data.get("lock_timeout", 60.0)),
    )

    wf_data = _section(data, "workflow")
    test_command = wf_data.get("test_command")
    if isinstance(test_command, str):
        test_command = tuple(test_command.split())
    elif test_command is not None:
        test_command = tuple(str(part) for part in test_command)
    workflow = WorkflowConfig(
        max_iterations=int(wf_data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
        skip_spec=bool(wf_data.get("skip_spec", False)),
        skip_refactor=bool(wf_data.get("skip_refactor", False)),
        review=bool(wf_data.get("review", False)),
        test_command=test_command,
        test_timeout=float(wf_data.get("test_timeout", DEFAULT_TEST_TIMEOUT)),
    )

    coord_data = _section(data, "coordinator")
    coordinator = CoordinatorConfig(
        max_concurrent=int(coord_data.get("max_concurrent", 4)),
        mode=str(coord_data.get("mode", "tdd")),
        base_ref=str(coord_data.get("base_ref", "main")),
        strict_cross_repo=bool(coord_data.get("strict_cross_repo", False)),
        poll_interval=float(coord_data.get("poll_interval", 0.5)),
    )

    storage_data = _section(data, "storage")
    storage = StorageConfig(database=Path(storage_data.get("database", DEFAULT_DATABASE)))

    return OrchestratorConfig(
        agent=agent,
        pool=pool,
        workflow=workflow,
        coordinator=coordinator,
        storage=storage,
    )


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise OrchestratorConfigError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _optional_int(data: dict[str, Any], key: str, default: int | None = None) -> int | None:
    value = data.get(key, default)
    return None if value is None else int(value)


def _optional_float(data: dict[str, Any], key: str, default: float | None = None) -> float | None:
    value = data.get(key, default)
    return None if value is None else float(value)


def _apply_env(config: OrchestratorConfig, env: Any) -> OrchestratorConfig:
    executable = env.get(ENV_EXECUTABLE)
    model = env.get(ENV_MODEL)
    if not executable and not model:
        return config
    agent = replace(
        config.agent,
        executable=executable or config.agent.executable,
        model=model or config.agent.model,
    )
    return replace(config, agent=agent)
