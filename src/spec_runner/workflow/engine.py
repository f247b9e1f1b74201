"""WorkflowStepEngine -- per-item step pipeline backed by ``transitions``.

Provides:
- WorkflowModel: model object the Machine attaches ``state`` and the
  ``advance``/``abort`` triggers to.
- StepResult / WorkflowRun: outcome records for one item's pipeline.
- WorkflowStepEngine: resolves the steps, walks the machine one step at a
  time and runs a pluggable async handler per step.

Machine states are ``pending``, one state per resolved step, then
``finished``; ``abort`` moves any non-terminal state to ``aborted``.
A failing required step aborts the rest. A failing optional step is logged
and the pipeline continues.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from transitions import Machine

from spec_runner.agents import AgentInvoker
from spec_runner.errors import ItemExecutionFailure
from spec_runner.models import WorkItem
from spec_runner.specgen import SpecGenerator
from spec_runner.workflow.config import (
    StepDefinition,
    StepName,
    WorkflowDefinition,
    WorkflowOptions,
    resolve_steps,
)

logger = logging.getLogger(__name__)

PENDING = "pending"
FINISHED = "finished"
ABORTED = "aborted"

StepHandler = Callable[[WorkItem, "WorkflowRun"], Awaitable[str]]


@dataclass(frozen=True)
class StepResult:
    step: str
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0


@dataclass
class WorkflowRun:
    """State of one item's pass through a workflow.

    ``context`` carries values between steps (``plan`` stores the spec there
    for ``execute``).
    """

    workflow_id: str
    item_id: str
    planned_steps: list[str]
    results: list[StepResult] = field(default_factory=list)
    state: str = PENDING
    context: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None

    @property
    def completed_steps(self) -> list[str]:
        return [r.step for r in self.results if r.success]

    @property
    def failed_steps(self) -> list[str]:
        return [r.step for r in self.results if not r.success]

    @property
    def aborted(self) -> bool:
        return self.state == ABORTED

    @property
    def success(self) -> bool:
        """True only when at least one step ran and none failed."""
        return bool(self.results) and not self.aborted and not self.failed_steps

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def result_for(self, step: str) -> StepResult | None:
        for result in self.results:
            if result.step == step:
                return result
        return None


class WorkflowModel:
    """Model object for the step machine.

    Machine attaches ``state`` and the trigger methods at construction time.
    """

    def __init__(self, workflow_id: str, item_id: str) -> None:
        self.workflow_id = workflow_id
        self.item_id = item_id
        self.state: str = ""

    def on_enter_state(self, event: Any) -> None:
        logger.debug(
            "%s/%s entered %s", self.workflow_id, self.item_id, event.transition.dest
        )


def build_machine(model: WorkflowModel, step_names: list[str]) -> Machine:
    """Create the linear step machine for ``step_names``."""
    chain = [PENDING, *step_names, FINISHED]
    transitions = [
        {"trigger": "advance", "source": src, "dest": dst}
        for src, dst in zip(chain, chain[1:])
    ]
    transitions.append(
        {"trigger": "abort", "source": [PENDING, *step_names], "dest": ABORTED}
    )
    return Machine(
        model=model,
        states=[*chain, ABORTED],
        transitions=transitions,
        initial=PENDING,
        auto_transitions=False,
        send_event=True,
        after_state_change="on_enter_state",
    )


class WorkflowStepEngine:
    """Runs workflow steps for one work item at a time.

    Args:
        spec_generator: Used by the default ``plan`` handler.
        invoker: Used by the default ``execute`` handler.
        handlers: Overrides for individual steps.
    """

    def __init__(
        self,
        spec_generator: SpecGenerator,
        invoker: AgentInvoker,
        handlers: dict[StepName, StepHandler] | None = None,
    ) -> None:
        self.spec_generator = spec_generator
        self.invoker = invoker
        self._handlers: dict[StepName, StepHandler] = {
            StepName.PLAN: self._plan,
            StepName.EXECUTE: self._execute,
        }
        if handlers:
            self._handlers.update(handlers)

    def register_handler(self, step: StepName, handler: StepHandler) -> None:
        self._handlers[StepName(step)] = handler

    async def execute(
        self,
        item: WorkItem,
        workflow: WorkflowDefinition,
        options: WorkflowOptions | None = None,
    ) -> WorkflowRun:
        """Run the resolved steps of ``workflow`` for ``item``.

        Raises:
            WorkflowValidationError: If ``options`` name unknown steps. No
                step runs in that case.
        """
        steps = resolve_steps(workflow, options)
        step_names = [step.name.value for step in steps]
        run = WorkflowRun(workflow_id=workflow.id, item_id=item.id, planned_steps=step_names)
        model = WorkflowModel(workflow.id, item.id)
        build_machine(model, step_names)

        logger.info(
            "Executing workflow %s for %s: %s",
            workflow.id, item.id, " -> ".join(step_names) or "(no steps)",
        )

        for step in steps:
            model.advance()
            run.state = model.state
            result = await self._run_step(item, step, run)
            run.results.append(result)
            if result.success:
                continue
            if step.required:
                logger.warning("Required step %s failed for %s; aborting", step.name, item.id)
                model.abort()
                break
            logger.warning("Optional step %s failed for %s: %s", step.name, item.id, result.error)

        if model.state != ABORTED:
            model.advance()
        run.state = model.state
        run.finished_at = time.monotonic()
        return run

    async def _run_step(
        self,
        item: WorkItem,
        step: StepDefinition,
        run: WorkflowRun,
    ) -> StepResult:
        handler = self._handlers.get(step.name, _record_completion)
        started = time.monotonic()
        try:
            output = await handler(item, run)
        except Exception as exc:
            # Handler errors become step failures; the engine decides abort vs continue.
            return StepResult(
                step=step.name.value,
                success=False,
                error=str(exc) or type(exc).__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        return StepResult(
            step=step.name.value,
            success=True,
            output=output,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Default handlers
    # ------------------------------------------------------------------

    async def _plan(self, item: WorkItem, run: WorkflowRun) -> str:
        spec = self.spec_generator.generate(item)
        validation = self.spec_generator.validate(spec)
        if not validation.valid:
            raise ItemExecutionFailure(
                item.id, "Spec validation failed: " + "; ".join(validation.gaps)
            )
        path = self.spec_generator.write(spec)
        run.context["spec"] = spec
        return f"Specification generated at: {path}"

    async def _execute(self, item: WorkItem, run: WorkflowRun) -> str:
        result = await self.invoker.invoke(item, run.context.get("spec"))
        if not result.success:
            raise ItemExecutionFailure(item.id, result.error or "Agent reported failure")
        return result.output or f"Executed {item.id} with capability: {item.capability}"

    @staticmethod
    def get_summary(run: WorkflowRun) -> str:
        lines = [
            "Workflow Execution Summary",
            "==========================",
            f"Workflow: {run.workflow_id}",
            f"Item: {run.item_id}",
            f"Status: {'Success' if run.success else 'Failed'}",
            f"Duration: {run.elapsed_seconds:.2f}s",
            "",
            f"Completed Steps: {len(run.completed_steps)}",
            f"Failed Steps: {len(run.failed_steps)}",
        ]
        for result in run.results:
            mark = "ok" if result.success else "FAILED"
            detail = result.output if result.success else result.error
            lines.append(f"  [{mark}] {result.step} ({result.duration_ms}ms): {detail}")
        skipped = [s for s in run.planned_steps if run.result_for(s) is None]
        if skipped:
            lines.append(f"Not run: {', '.join(skipped)}")
        return "\n".join(lines)


async def _record_completion(item: WorkItem, run: WorkflowRun) -> str:
    return f"{run.state.capitalize()} completed for {item.id}"


__all__ = [
    "PENDING",
    "FINISHED",
    "ABORTED",
    "StepHandler",
    "StepResult",
    "WorkflowRun",
    "WorkflowModel",
    "build_machine",
    "WorkflowStepEngine",
]
