"""Runner configuration stored in ``<run_dir>/config.yaml``.

Example::

    max_iterations: 50          # or "unbounded"
    workflow: spec-first        # omit or null to skip the step engine
    workflow_options:
      skip: [review, resolve]
    retention:
      progress_lines: 1000
      archive_keep: 5
      archive_max_age_hours: 24
    checkpoint:
      max_context_size: 10000
      include_context: true
    agent:
      command: [claude, -p]     # null runs the simulated agent
      timeout_seconds: 600
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from spec_runner.agents import DEFAULT_TIMEOUT_SECONDS
from spec_runner.checkpoint import DEFAULT_MAX_CONTEXT_SIZE
from spec_runner.errors import ConfigError
from spec_runner.models import IterationLimit
from spec_runner.state import (
    ARCHIVE_MAX_AGE_HOURS,
    MAX_ARCHIVED_STATES,
    MAX_PROGRESS_LINES,
)
from spec_runner.workflow.config import WorkflowOptions

logger = logging.getLogger(__name__)

RUN_DIRNAME = ".runner"
CONFIG_FILENAME = "config.yaml"


@dataclass
class RetentionConfig:
    progress_lines: int = MAX_PROGRESS_LINES
    archive_keep: int = MAX_ARCHIVED_STATES
    archive_max_age_hours: float = ARCHIVE_MAX_AGE_HOURS


@dataclass
class CheckpointConfig:
    max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE
    include_context: bool = True


@dataclass
class AgentSettings:
    command: list[str] | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass
class RunnerConfig:
    """Runner configuration with defaults for every field."""

    max_iterations: IterationLimit = field(default_factory=IterationLimit.unbounded)
    workflow: str | None = None
    workflow_options: WorkflowOptions = field(default_factory=WorkflowOptions)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_iterations": self.max_iterations.to_json(),
            "workflow": self.workflow,
            "workflow_options": self.workflow_options.to_dict(),
            "retention": {
                "progress_lines": self.retention.progress_lines,
                "archive_keep": self.retention.archive_keep,
                "archive_max_age_hours": self.retention.archive_max_age_hours,
            },
            "checkpoint": {
                "max_context_size": self.checkpoint.max_context_size,
                "include_context": self.checkpoint.include_context,
            },
            "agent": {
                "command": list(self.agent.command) if self.agent.command else None,
                "timeout_seconds": self.agent.timeout_seconds,
            },
        }


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid {key} in config.yaml: expected a mapping")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, label: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"Invalid {label} in config.yaml: expected a positive integer")
    return value


def _parse(data: dict[str, Any]) -> RunnerConfig:
    try:
        max_iterations = IterationLimit.parse(data.get("max_iterations"))
    except ValueError as e:
        raise ConfigError(f"Invalid max_iterations in config.yaml: {e}") from e

    workflow = data.get("workflow")
    if workflow is not None and not isinstance(workflow, str):
        raise ConfigError("Invalid workflow in config.yaml: expected a workflow name")

    options = _section(data, "workflow_options")
    for key in ("steps", "skip"):
        if key in options and not isinstance(options[key], list):
            raise ConfigError(f"Invalid workflow_options.{key} in config.yaml: expected a list")

    retention = _section(data, "retention")
    max_age = retention.get("archive_max_age_hours", ARCHIVE_MAX_AGE_HOURS)
    if isinstance(max_age, bool) or not isinstance(max_age, (int, float)) or max_age <= 0:
        raise ConfigError(
            "Invalid retention.archive_max_age_hours in config.yaml: expected a positive number"
        )

    checkpoint = _section(data, "checkpoint")
    include_context = checkpoint.get("include_context", True)
    if not isinstance(include_context, bool):
        raise ConfigError("Invalid checkpoint.include_context in config.yaml: expected a boolean")

    agent = _section(data, "agent")
    command = agent.get("command")
    if isinstance(command, str):
        command = command.split()
    if command is not None and (
        not isinstance(command, list) or not all(isinstance(arg, str) for arg in command)
    ):
        raise ConfigError("Invalid agent.command in config.yaml: expected a list of strings")
    timeout = agent.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError("Invalid agent.timeout_seconds in config.yaml: expected a positive number")

    return RunnerConfig(
        max_iterations=max_iterations,
        workflow=workflow,
        workflow_options=WorkflowOptions.from_dict(dict(options)),
        retention=RetentionConfig(
            progress_lines=_positive_int(
                retention, "progress_lines", MAX_PROGRESS_LINES, "retention.progress_lines"
            ),
            archive_keep=_positive_int(
                retention, "archive_keep", MAX_ARCHIVED_STATES, "retention.archive_keep"
            ),
            archive_max_age_hours=float(max_age),
        ),
        checkpoint=CheckpointConfig(
            max_context_size=_positive_int(
                checkpoint,
                "max_context_size",
                DEFAULT_MAX_CONTEXT_SIZE,
                "checkpoint.max_context_size",
            ),
            include_context=include_context,
        ),
        agent=AgentSettings(
            command=list(command) if command else None,
            timeout_seconds=float(timeout),
        ),
    )


def load_config(run_dir: Path) -> RunnerConfig:
    """Load configuration from ``<run_dir>/config.yaml``.

    Args:
        run_dir: The run directory (usually ``<project>/.runner``)

    Returns:
        RunnerConfig instance (defaults if the file does not exist)

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    config_file = run_dir / CONFIG_FILENAME
    if not config_file.exists():
        logger.debug("Config file not found: %s; using defaults", config_file)
        return RunnerConfig()

    yaml = YAML()
    yaml.preserve_quotes = True
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    except YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config in {config_file}: expected a mapping")
    return _parse(data)


def save_config(run_dir: Path, config: RunnerConfig) -> Path:
    """Write ``config`` into ``config.yaml``, preserving unrelated keys and comments."""
    config_file = run_dir / CONFIG_FILENAME

    yaml = YAML()
    yaml.preserve_quotes = True

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    else:
        data = {}
        run_dir.mkdir(parents=True, exist_ok=True)

    for key, value in config.to_dict().items():
        data[key] = value

    with open(config_file, "w", encoding="utf-8") as f:
        yaml.dump(data, f)

    logger.info("Saved runner config to %s", config_file)
    return config_file


__all__ = [
    "RUN_DIRNAME",
    "CONFIG_FILENAME",
    "RetentionConfig",
    "CheckpointConfig",
    "AgentSettings",
    "RunnerConfig",
    "load_config",
    "save_config",
]
