"""Per-item workflow steps: definitions, resolution and the step engine."""

from spec_runner.workflow.config import (
    BUILTIN_WORKFLOWS,
    DEFAULT_WORKFLOW_ID,
    SPEC_FIRST,
    StepDefinition,
    StepName,
    WorkflowDefinition,
    WorkflowOptions,
    get_workflow,
    load_workflows,
    resolve_steps,
    validate_options,
)
from spec_runner.workflow.engine import (
    StepResult,
    WorkflowRun,
    WorkflowStepEngine,
)

__all__ = [
    "BUILTIN_WORKFLOWS",
    "DEFAULT_WORKFLOW_ID",
    "SPEC_FIRST",
    "StepDefinition",
    "StepName",
    "WorkflowDefinition",
    "WorkflowOptions",
    "get_workflow",
    "load_workflows",
    "resolve_steps",
    "validate_options",
    "StepResult",
    "WorkflowRun",
    "WorkflowStepEngine",
]
