"""Workflow definitions and step resolution.

Workflows are read from ``<run_dir>/workflows.yaml`` and validated against
``WORKFLOWS_SCHEMA``. The built-in ``spec-first`` workflow is always
available and may be overridden by a file entry with the same id.

Example ``workflows.yaml``::

    workflows:
      quick:
        name: Quick
        steps:
          - name: plan
          - name: execute
          - name: verify
            required: false
        default_options:
          skip: [verify]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import jsonschema
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from spec_runner.errors import WorkflowValidationError

logger = logging.getLogger(__name__)

WORKFLOWS_FILENAME = "workflows.yaml"
DEFAULT_WORKFLOW_ID = "spec-first"


class StepName(StrEnum):
    """Fixed step names, in default execution order."""

    ANALYZE = "analyze"
    PLAN = "plan"
    EXECUTE = "execute"
    REVIEW = "review"
    RESOLVE = "resolve"
    VERIFY = "verify"
    COMPLETE = "complete"


DEFAULT_STEP_ORDER: tuple[StepName, ...] = tuple(StepName)

_STEP_NAMES = [step.value for step in StepName]

WORKFLOWS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["workflows"],
    "properties": {
        "workflows": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["steps"],
                "properties": {
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "steps": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["name"],
                            "properties": {
                                "name": {"enum": _STEP_NAMES},
                                "description": {"type": "string"},
                                "required": {"type": "boolean"},
                            },
                            "additionalProperties": False,
                        },
                    },
                    "default_options": {
                        "type": "object",
                        "properties": {
                            "steps": {"type": "array", "items": {"type": "string"}},
                            "from": {"type": "string"},
                            "to": {"type": "string"},
                            "skip": {"type": "array", "items": {"type": "string"}},
                        },
                        "additionalProperties": False,
                    },
                },
            },
        },
    },
}


@dataclass(frozen=True)
class StepDefinition:
    name: StepName
    description: str = ""
    required: bool = True


@dataclass(frozen=True)
class WorkflowOptions:
    """Selection of steps to run.

    ``steps`` wins outright when given; otherwise the full order is sliced
    by ``from_step``/``to_step`` and then ``skip`` is removed.
    """

    steps: tuple[str, ...] | None = None
    from_step: str | None = None
    to_step: str | None = None
    skip: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WorkflowOptions:
        data = data or {}
        steps = data.get("steps")
        return cls(
            steps=tuple(steps) if steps else None,
            from_step=data.get("from"),
            to_step=data.get("to"),
            skip=tuple(data.get("skip") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.steps:
            d["steps"] = list(self.steps)
        if self.from_step:
            d["from"] = self.from_step
        if self.to_step:
            d["to"] = self.to_step
        if self.skip:
            d["skip"] = list(self.skip)
        return d

    def merged_over(self, defaults: WorkflowOptions) -> WorkflowOptions:
        """Return these options with unset fields taken from ``defaults``."""
        return WorkflowOptions(
            steps=self.steps if self.steps is not None else defaults.steps,
            from_step=self.from_step or defaults.from_step,
            to_step=self.to_step or defaults.to_step,
            skip=self.skip or defaults.skip,
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    steps: tuple[StepDefinition, ...]
    description: str = ""
    default_options: WorkflowOptions = field(default_factory=WorkflowOptions)

    @property
    def step_names(self) -> list[str]:
        return [step.name.value for step in self.steps]

    def get_step(self, name: str) -> StepDefinition | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None


SPEC_FIRST = WorkflowDefinition(
    id=DEFAULT_WORKFLOW_ID,
    name="Spec First",
    description="Draft a technical spec, execute it, then review and verify.",
    steps=(
        StepDefinition(StepName.ANALYZE, "Analyze the item and the codebase", required=False),
        StepDefinition(StepName.PLAN, "Generate and write the technical spec"),
        StepDefinition(StepName.EXECUTE, "Invoke the agent"),
        StepDefinition(StepName.REVIEW, "Review the change", required=False),
        StepDefinition(StepName.RESOLVE, "Resolve review findings", required=False),
        StepDefinition(StepName.VERIFY, "Verify acceptance criteria"),
        StepDefinition(StepName.COMPLETE, "Mark the item complete"),
    ),
)

BUILTIN_WORKFLOWS: dict[str, WorkflowDefinition] = {SPEC_FIRST.id: SPEC_FIRST}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _format_schema_errors(data: Any) -> list[str]:
    validator = jsonschema.Draft202012Validator(WORKFLOWS_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    messages = []
    for err in errors:
        path = ".".join(str(p) for p in err.absolute_path) if err.absolute_path else "(root)"
        messages.append(f"{path}: {err.message}")
    return messages


def _parse_workflow(workflow_id: str, raw: dict[str, Any]) -> WorkflowDefinition:
    steps = tuple(
        StepDefinition(
            name=StepName(step["name"]),
            description=step.get("description", ""),
            required=step.get("required", True),
        )
        for step in raw["steps"]
    )
    seen: set[StepName] = set()
    for step in steps:
        if step.name in seen:
            raise WorkflowValidationError(
                f"Workflow '{workflow_id}' lists step '{step.name}' more than once"
            )
        seen.add(step.name)

    workflow = WorkflowDefinition(
        id=workflow_id,
        name=raw.get("name", workflow_id),
        description=raw.get("description", ""),
        steps=steps,
        default_options=WorkflowOptions.from_dict(raw.get("default_options")),
    )
    validate_options(workflow, workflow.default_options)
    return workflow


def load_workflows(run_dir: Path) -> dict[str, WorkflowDefinition]:
    """Return built-in workflows overlaid with those in ``workflows.yaml``.

    Raises:
        WorkflowValidationError: If the file is not valid YAML or fails
            schema validation.
    """
    workflows = dict(BUILTIN_WORKFLOWS)
    config_file = run_dir / WORKFLOWS_FILENAME
    if not config_file.exists():
        return workflows

    yaml = YAML()
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    except YAMLError as e:
        raise WorkflowValidationError(f"Invalid YAML in {config_file}: {e}") from e

    messages = _format_schema_errors(data)
    if messages:
        raise WorkflowValidationError(
            f"{config_file} failed validation with {len(messages)} error(s)",
            errors=messages,
        )

    for workflow_id, raw in data["workflows"].items():
        workflows[str(workflow_id)] = _parse_workflow(str(workflow_id), raw)
    logger.debug("Loaded %d workflow(s) from %s", len(data["workflows"]), config_file)
    return workflows


def get_workflow(run_dir: Path, workflow_id: str) -> WorkflowDefinition:
    workflows = load_workflows(run_dir)
    try:
        return workflows[workflow_id]
    except KeyError:
        known = ", ".join(sorted(workflows))
        raise WorkflowValidationError(
            f"Workflow '{workflow_id}' not found. Known workflows: {known}"
        ) from None


# ---------------------------------------------------------------------------
# Step resolution
# ---------------------------------------------------------------------------


def _unknown(names: Iterable[str], valid: set[str]) -> list[str]:
    return [name for name in names if name not in valid]


def validate_options(workflow: WorkflowDefinition, options: WorkflowOptions) -> None:
    """Check every step name in ``options`` exists in ``workflow``.

    Raises:
        WorkflowValidationError: Listing every unknown name.
    """
    valid = set(workflow.step_names)
    errors: list[str] = []
    if options.steps:
        errors.extend(f"unknown step: {name}" for name in _unknown(options.steps, valid))
        if len(set(options.steps)) != len(options.steps):
            errors.append("steps must not repeat")
    if options.from_step and options.from_step not in valid:
        errors.append(f"unknown 'from' step: {options.from_step}")
    if options.to_step and options.to_step not in valid:
        errors.append(f"unknown 'to' step: {options.to_step}")
    errors.extend(f"unknown skip step: {name}" for name in _unknown(options.skip, valid))
    if errors:
        raise WorkflowValidationError(
            f"Invalid options for workflow '{workflow.id}'",
            errors=errors,
        )


def resolve_steps(
    workflow: WorkflowDefinition,
    options: WorkflowOptions | None = None,
) -> list[StepDefinition]:
    """Return the steps to run, in order.

    Explicit ``options`` are merged over the workflow's ``default_options``
    and validated before anything is selected.

    Raises:
        WorkflowValidationError: If any referenced step name is unknown or
            the selection leaves no step to run.
    """
    effective = (options or WorkflowOptions()).merged_over(workflow.default_options)
    validate_options(workflow, effective)

    if effective.steps:
        return [workflow.get_step(name) for name in effective.steps]

    names = workflow.step_names
    if effective.from_step:
        names = names[names.index(effective.from_step):]
    if effective.to_step and effective.to_step in names:
        # a "to" step before "from" is ignored
        names = names[: names.index(effective.to_step) + 1]
    skip = set(effective.skip)
    selected = [workflow.get_step(name) for name in names if name not in skip]
    if not selected:
        raise WorkflowValidationError(
            f"No steps of workflow '{workflow.id}' left to run",
            ["skip removes every selected step"],
        )
    return selected


__all__ = [
    "WORKFLOWS_FILENAME",
    "DEFAULT_WORKFLOW_ID",
    "StepName",
    "DEFAULT_STEP_ORDER",
    "WORKFLOWS_SCHEMA",
    "StepDefinition",
    "WorkflowOptions",
    "WorkflowDefinition",
    "SPEC_FIRST",
    "BUILTIN_WORKFLOWS",
    "load_workflows",
    "get_workflow",
    "validate_options",
    "resolve_steps",
]
