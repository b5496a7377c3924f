"""Load pipeline configuration from `.prd_pipeline/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    CONFIG_FILE_JSON,
    DEFAULT_AGENT_ARGS,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_BASE_BRANCH,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_COMPLETION_SIGNAL,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error, _save_data


@dataclass(frozen=True)
class AgentConfig:
    command: str = DEFAULT_AGENT_COMMAND
    args: tuple[str, ...] = DEFAULT_AGENT_ARGS
    completion_signal: str = DEFAULT_COMPLETION_SIGNAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "completion_signal": self.completion_signal,
        }


@dataclass(frozen=True)
class PipelineConfig:
    base_branch: str = DEFAULT_BASE_BRANCH
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    agent: AgentConfig = field(default_factory=AgentConfig)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_branch": self.base_branch,
            "branch_prefix": self.branch_prefix,
            "max_iterations": self.max_iterations,
            "timeout_seconds": self.timeout_seconds,
            "max_workers": self.max_workers,
            "agent": self.agent.to_dict(),
        }

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


def config_path(project_dir: Path) -> Path:
    """Return the config file in use, preferring YAML over JSON."""
    state_dir = project_dir.resolve() / STATE_DIR_NAME
    yaml_path = state_dir / CONFIG_FILE
    json_path = state_dir / CONFIG_FILE_JSON
    if not yaml_path.exists() and json_path.exists():
        return json_path
    return yaml_path


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"config '{key}' must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"config '{key}' must be an integer, got {value!r}") from exc
    if number < 1:
        raise ConfigError(f"config '{key}' must be >= 1, got {number}")
    return number


def _string(raw: dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"config '{key}' must be a string, got {type(value).__name__}")
    return value


def _parse_agent(raw: Any) -> AgentConfig:
    if raw is None:
        return AgentConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"config 'agent' must be a mapping, got {type(raw).__name__}")
    args = raw.get("args", list(DEFAULT_AGENT_ARGS))
    if args is None:
        args = []
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigError("config 'agent.args' must be a list of strings")
    return AgentConfig(
        command=_string(raw, "command", DEFAULT_AGENT_COMMAND),
        args=tuple(args),
        completion_signal=_string(raw, "completion_signal", DEFAULT_COMPLETION_SIGNAL),
    )


def parse_config(raw: dict[str, Any]) -> PipelineConfig:
    """Build a ``PipelineConfig`` from a raw mapping; absent keys take defaults.

    Raises:
        ConfigError: If a value has the wrong type or range.
    """
    return PipelineConfig(
        base_branch=_string(raw, "base_branch", DEFAULT_BASE_BRANCH),
        branch_prefix=_string(raw, "branch_prefix", DEFAULT_BRANCH_PREFIX),
        max_iterations=_positive_int(raw, "max_iterations", DEFAULT_MAX_ITERATIONS),
        timeout_seconds=_positive_int(raw, "timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
        max_workers=_positive_int(raw, "max_workers", DEFAULT_MAX_WORKERS),
        agent=_parse_agent(raw.get("agent")),
    )


def load_config(project_dir: Path) -> PipelineConfig:
    """Load the pipeline config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        The parsed config, or defaults when no config file exists.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    path = config_path(project_dir)
    if not path.exists():
        logger.debug("No config at {}; using defaults", path)
        return PipelineConfig()
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Unable to read config: {err}")
    return parse_config(data)


def write_default_config(project_dir: Path, *, overwrite: bool = False) -> Path:
    """Write a default config file, leaving an existing one alone unless asked."""
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if path.exists() and not overwrite:
        return path
    _save_data(path, PipelineConfig().to_dict())
    logger.debug("Wrote default config to {}", path)
    return path
