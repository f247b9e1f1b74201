"""spec-runner: dependency-ordered, parallel execution of work items."""

from importlib.metadata import PackageNotFoundError, version

from spec_runner.checkpoint import CheckpointStore, RunContext, create_run_context
from spec_runner.errors import (
    CircularDependencyError,
    ConfigError,
    ItemExecutionFailure,
    PersistenceError,
    RunnerError,
    SourceMissingError,
    StaleCheckpointError,
    ValidationError,
    WorkflowValidationError,
)
from spec_runner.graph import WorkItemGraph
from spec_runner.models import (
    Batch,
    ExecutionState,
    ExecutionSummary,
    IterationLimit,
    RunStatus,
    WorkItem,
)
from spec_runner.orchestrator import Orchestrator
from spec_runner.state import ExecutionStateStore

try:
    __version__ = version("spec-runner")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "Batch",
    "CheckpointStore",
    "CircularDependencyError",
    "ConfigError",
    "ExecutionState",
    "ExecutionStateStore",
    "ExecutionSummary",
    "ItemExecutionFailure",
    "IterationLimit",
    "Orchestrator",
    "PersistenceError",
    "RunContext",
    "RunStatus",
    "RunnerError",
    "SourceMissingError",
    "StaleCheckpointError",
    "ValidationError",
    "WorkItem",
    "WorkItemGraph",
    "WorkflowValidationError",
    "create_run_context",
]
