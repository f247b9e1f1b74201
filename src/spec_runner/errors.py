"""Exception hierarchy for spec-runner.

Planning-time errors (``ValidationError`` and subclasses) are raised before
any batch executes. Per-item failures are recorded in the execution state
and never propagate past the batch boundary.
"""

from __future__ import annotations


class RunnerError(Exception):
    """Base exception for spec-runner errors."""

    pass


class ValidationError(RunnerError):
    """Raised when work items, workflows or specs fail validation.

    Attributes:
        errors: Per-field messages collected during validation.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = errors or []


class CircularDependencyError(ValidationError):
    """Raised when the dependency relation between work items has a cycle."""

    def __init__(self, remaining: list[str]) -> None:
        self.remaining = remaining
        super().__init__(
            "Unable to resolve dependencies - circular dependency among: "
            + ", ".join(remaining),
            errors=[f"unresolvable: {item_id}" for item_id in remaining],
        )


class WorkflowValidationError(ValidationError):
    """Raised when a workflow definition or step selection is invalid."""

    pass


class SourceMissingError(RunnerError):
    """Raised when the work-item source file does not exist."""

    def __init__(self, path: object) -> None:
        self.path = path
        super().__init__(
            f"Work-item source not found at {path}. Cannot start a run."
        )


class ItemExecutionFailure(RunnerError):
    """A single work item failed; recorded, never fatal to the run."""

    def __init__(self, item_id: str, reason: str) -> None:
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"{item_id}: {reason}")


class PersistenceError(RunnerError):
    """A best-effort persistence operation (trim, archive, checkpoint) failed."""

    pass


class StaleCheckpointError(RunnerError):
    """Raised when a checkpoint lacks the fields required to resume."""

    pass


class ConfigError(RunnerError):
    """Raised when ``config.yaml`` cannot be parsed or validated."""

    pass


__all__ = [
    "RunnerError",
    "ValidationError",
    "CircularDependencyError",
    "WorkflowValidationError",
    "SourceMissingError",
    "ItemExecutionFailure",
    "PersistenceError",
    "StaleCheckpointError",
    "ConfigError",
]
