"""Tests for workflow loading, step resolution and the step engine."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from spec_runner.agents import InvocationResult, SimulatedInvoker
from spec_runner.errors import WorkflowValidationError
from spec_runner.specgen import SpecGenerator
from spec_runner.workflow.config import (
    SPEC_FIRST,
    StepDefinition,
    StepName,
    WorkflowDefinition,
    WorkflowOptions,
    get_workflow,
    load_workflows,
    resolve_steps,
)
from spec_runner.workflow.engine import ABORTED, FINISHED, WorkflowRun, WorkflowStepEngine

from tests.spec_runner.helpers import make_item


def names(steps: list[StepDefinition]) -> list[str]:
    return [step.name.value for step in steps]


# ---------------------------------------------------------------------------
# Step resolution
# ---------------------------------------------------------------------------


class TestResolveSteps:
    def test_default_is_full_order(self) -> None:
        assert names(resolve_steps(SPEC_FIRST)) == [
            "analyze", "plan", "execute", "review", "resolve", "verify", "complete",
        ]

    def test_from_and_to_slice(self) -> None:
        options = WorkflowOptions(from_step="plan", to_step="review")
        assert names(resolve_steps(SPEC_FIRST, options)) == ["plan", "execute", "review"]

    def test_skip_removes_steps(self) -> None:
        options = WorkflowOptions(skip=("review", "resolve"))
        assert names(resolve_steps(SPEC_FIRST, options)) == [
            "analyze", "plan", "execute", "verify", "complete",
        ]

    def test_explicit_steps_win(self) -> None:
        options = WorkflowOptions(steps=("execute", "plan"), from_step="verify", skip=("plan",))
        assert names(resolve_steps(SPEC_FIRST, options)) == ["execute", "plan"]

    def test_to_before_from_is_ignored(self) -> None:
        options = WorkflowOptions(from_step="verify", to_step="plan")
        assert names(resolve_steps(SPEC_FIRST, options)) == ["verify", "complete"]

    def test_empty_selection_rejected(self) -> None:
        options = WorkflowOptions(from_step="verify", skip=("verify", "complete"))
        with pytest.raises(WorkflowValidationError, match="No steps"):
            resolve_steps(SPEC_FIRST, options)

    @pytest.mark.parametrize(
        "options",
        [
            WorkflowOptions(steps=("plan", "deploy")),
            WorkflowOptions(from_step="deploy"),
            WorkflowOptions(to_step="deploy"),
            WorkflowOptions(skip=("deploy",)),
            WorkflowOptions(steps=("plan", "plan")),
        ],
    )
    def test_unknown_names_rejected(self, options: WorkflowOptions) -> None:
        with pytest.raises(WorkflowValidationError) as exc_info:
            resolve_steps(SPEC_FIRST, options)
        assert exc_info.value.errors

    def test_step_missing_from_workflow_rejected(self) -> None:
        short = WorkflowDefinition(
            id="short", name="Short", steps=(StepDefinition(StepName.EXECUTE),)
        )
        with pytest.raises(WorkflowValidationError):
            resolve_steps(short, WorkflowOptions(steps=("plan",)))

    def test_default_options_merged_under_explicit(self) -> None:
        workflow = WorkflowDefinition(
            id="w",
            name="W",
            steps=SPEC_FIRST.steps,
            default_options=WorkflowOptions(skip=("analyze",), to_step="execute"),
        )
        assert names(resolve_steps(workflow)) == ["plan", "execute"]
        explicit = WorkflowOptions(to_step="verify")
        assert names(resolve_steps(workflow, explicit)) == [
            "plan", "execute", "review", "resolve", "verify",
        ]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadWorkflows:
    def test_builtin_without_file(self, run_dir: Path) -> None:
        workflows = load_workflows(run_dir)
        assert "spec-first" in workflows

    def test_file_workflows_added(self, run_dir: Path) -> None:
        (run_dir / "workflows.yaml").write_text(
            "workflows:\n"
            "  quick:\n"
            "    name: Quick\n"
            "    steps:\n"
            "      - name: plan\n"
            "      - name: execute\n"
            "      - name: verify\n"
            "        required: false\n"
            "    default_options:\n"
            "      skip: [verify]\n",
            encoding="utf-8",
        )

        quick = get_workflow(run_dir, "quick")

        assert quick.name == "Quick"
        assert quick.step_names == ["plan", "execute", "verify"]
        assert quick.get_step("verify").required is False
        assert quick.default_options.skip == ("verify",)
        assert "spec-first" in load_workflows(run_dir)

    def test_schema_violation(self, run_dir: Path) -> None:
        (run_dir / "workflows.yaml").write_text(
            "workflows:\n  bad:\n    steps:\n      - name: deploy\n",
            encoding="utf-8",
        )
        with pytest.raises(WorkflowValidationError) as exc_info:
            load_workflows(run_dir)
        assert any("deploy" in message for message in exc_info.value.errors)

    def test_invalid_yaml(self, run_dir: Path) -> None:
        (run_dir / "workflows.yaml").write_text("workflows: [unclosed\n", encoding="utf-8")
        with pytest.raises(WorkflowValidationError, match="Invalid YAML"):
            load_workflows(run_dir)

    def test_unknown_workflow(self, run_dir: Path) -> None:
        with pytest.raises(WorkflowValidationError, match="not found"):
            get_workflow(run_dir, "nope")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def failing(message: str) -> AsyncMock:
    return AsyncMock(side_effect=RuntimeError(message))


class TestWorkflowStepEngine:
    @pytest.mark.asyncio
    async def test_full_run_succeeds(self, run_dir: Path) -> None:
        engine = WorkflowStepEngine(SpecGenerator(run_dir), SimulatedInvoker())

        run = await engine.execute(make_item("A"), SPEC_FIRST)

        assert run.success
        assert run.state == FINISHED
        assert run.completed_steps == SPEC_FIRST.step_names
        assert (run_dir / "current_spec.md").exists()
        assert "spec" in run.context
        assert all(result.duration_ms >= 0 for result in run.results)

    @pytest.mark.asyncio
    async def test_required_failure_aborts(self, run_dir: Path) -> None:
        verify_after = AsyncMock(return_value="never")
        engine = WorkflowStepEngine(
            SpecGenerator(run_dir),
            SimulatedInvoker(),
            handlers={StepName.EXECUTE: failing("agent crashed"), StepName.VERIFY: verify_after},
        )

        run = await engine.execute(make_item("A"), SPEC_FIRST)

        assert not run.success
        assert run.aborted
        assert run.state == ABORTED
        assert run.completed_steps == ["analyze", "plan"]
        assert run.failed_steps == ["execute"]
        assert run.result_for("execute").error == "agent crashed"
        verify_after.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_optional_failure_continues(self, run_dir: Path) -> None:
        engine = WorkflowStepEngine(
            SpecGenerator(run_dir),
            SimulatedInvoker(),
            handlers={StepName.REVIEW: failing("reviewer unavailable")},
        )

        run = await engine.execute(make_item("A"), SPEC_FIRST)

        assert run.state == FINISHED
        assert not run.aborted
        assert run.failed_steps == ["review"]
        assert "complete" in run.completed_steps
        assert not run.success

    @pytest.mark.asyncio
    async def test_failed_agent_fails_execute_step(self, run_dir: Path) -> None:
        invoker = AsyncMock()
        invoker.invoke.return_value = InvocationResult(success=False, error="exit 2")
        engine = WorkflowStepEngine(SpecGenerator(run_dir), invoker)

        run = await engine.execute(make_item("A"), SPEC_FIRST, WorkflowOptions(steps=("plan", "execute")))

        assert run.failed_steps == ["execute"]
        assert "exit 2" in run.result_for("execute").error
        spec = invoker.invoke.await_args.args[1]
        assert spec.item_id == "A"

    @pytest.mark.asyncio
    async def test_invalid_options_run_nothing(self, run_dir: Path) -> None:
        handler = AsyncMock(return_value="ran")
        engine = WorkflowStepEngine(
            SpecGenerator(run_dir), SimulatedInvoker(), handlers={StepName.ANALYZE: handler}
        )

        with pytest.raises(WorkflowValidationError):
            await engine.execute(make_item("A"), SPEC_FIRST, WorkflowOptions(steps=("bogus",)))

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_handler_and_summary(self, run_dir: Path) -> None:
        engine = WorkflowStepEngine(SpecGenerator(run_dir), SimulatedInvoker())
        engine.register_handler(StepName.VERIFY, AsyncMock(return_value="all green"))

        run = await engine.execute(make_item("A"), SPEC_FIRST, WorkflowOptions(steps=("verify",)))
        summary = WorkflowStepEngine.get_summary(run)

        assert run.result_for("verify").output == "all green"
        assert "Workflow: spec-first" in summary
        assert "Status: Success" in summary
        assert "verify" in summary

    def test_summary_lists_unrun_steps(self) -> None:
        run = WorkflowRun(workflow_id="w", item_id="A", planned_steps=["plan", "execute"])
        summary = WorkflowStepEngine.get_summary(run)
        assert "Not run: plan, execute" in summary

    def test_run_without_results_is_not_success(self) -> None:
        run = WorkflowRun(workflow_id="w", item_id="A", planned_steps=[], state=FINISHED)
        assert not run.aborted
        assert not run.success
