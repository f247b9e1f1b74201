"""Batch-driving orchestrator.

Flow of :meth:`Orchestrator.execute`:

1. Load and validate the work-item source, plan the batches and validate the
   workflow selection. Every fatal error is raised here, before any state is
   written.
2. Initialize a fresh execution state.
3. For each batch: check the stop condition, run the batch (concurrently
   when it holds more than one item), persist ``current_batch`` and save a
   checkpoint.
4. Finalize the status, print the summary and clean up the run directory.

Per-item errors never escape a batch; they are recorded as failures. An error
while recording progress stops the run with status failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace

from rich.console import Console
from rich.markup import escape

from spec_runner.agents import AgentInvoker, InvocationResult
from spec_runner.checkpoint import (
    CheckpointMetadata,
    CheckpointStore,
    RunContext,
    SaveOptions,
    create_run_context,
)
from spec_runner.display import create_plan_table, print_summary
from spec_runner.errors import PersistenceError, RunnerError, StaleCheckpointError
from spec_runner.graph import WorkItemGraph
from spec_runner.models import (
    Batch,
    ExecutionState,
    FailedItem,
    IterationLimit,
    RunStatus,
    WorkItem,
)
from spec_runner.source import WorkItemSource
from spec_runner.specgen import SpecGenerator
from spec_runner.state import ExecutionStateStore
from spec_runner.workflow.config import WorkflowDefinition, WorkflowOptions, resolve_steps
from spec_runner.workflow.engine import WorkflowRun, WorkflowStepEngine

logger = logging.getLogger(__name__)

GraphFactory = Callable[[Sequence[WorkItem], Iterable[str]], WorkItemGraph]


def _default_graph_factory(items: Sequence[WorkItem], satisfied: Iterable[str]) -> WorkItemGraph:
    return WorkItemGraph(items, satisfied=satisfied)


class Orchestrator:
    """Runs every work item of a source in dependency order.

    All collaborators are injected; the CLI wires the file-backed ones.

    Args:
        source: Work-item source; receives ``passes``/``notes`` write-backs.
        state_store: Live execution state of the run.
        checkpoint_store: Resume snapshots.
        spec_generator: Drafts a spec before each agent call.
        invoker: Executes a single item.
        graph_factory: Builds the planner for a list of items.
        workflow_engine: Optional step engine; used only with ``workflow``.
        workflow: Workflow each item runs through instead of spec + invoke.
        workflow_options: Step selection for ``workflow``.
        checkpoint_options: Context bounds for saved checkpoints.
        console: Rich console for user-facing output.
    """

    def __init__(
        self,
        source: WorkItemSource,
        state_store: ExecutionStateStore,
        checkpoint_store: CheckpointStore,
        spec_generator: SpecGenerator,
        invoker: AgentInvoker,
        *,
        graph_factory: GraphFactory = _default_graph_factory,
        workflow_engine: WorkflowStepEngine | None = None,
        workflow: WorkflowDefinition | None = None,
        workflow_options: WorkflowOptions | None = None,
        checkpoint_options: SaveOptions | None = None,
        console: Console | None = None,
    ) -> None:
        self.source = source
        self.state_store = state_store
        self.checkpoint_store = checkpoint_store
        self.spec_generator = spec_generator
        self.invoker = invoker
        self.graph_factory = graph_factory
        self.workflow_engine = workflow_engine
        self.workflow = workflow
        self.workflow_options = workflow_options
        self.checkpoint_options = checkpoint_options or SaveOptions()
        self.console = console or Console()
        self._run: RunContext | None = None
        self._metadata: CheckpointMetadata | None = None

    @property
    def uses_workflow(self) -> bool:
        return self.workflow_engine is not None and self.workflow is not None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(
        self,
        max_iterations: IterationLimit | None = None,
        resume: bool = False,
    ) -> ExecutionState:
        """Execute all work items in batches.

        Args:
            max_iterations: Item-execution budget; unbounded by default.
            resume: Skip items whose ``passes`` flag is already set and keep
                the run id and retry counts of a stored checkpoint.

        Returns:
            The final execution state.

        Raises:
            SourceMissingError: If the source file does not exist.
            ValidationError: If the source, the dependency graph or the
                workflow selection is invalid. Nothing has run yet.
        """
        limit = max_iterations or IterationLimit.unbounded()

        self.source.assert_exists()
        document = self.source.load_document()
        items = document.items

        done_ids = [item.id for item in items if item.passes] if resume else []
        pending = [item for item in items if item.id not in set(done_ids)]
        graph = self.graph_factory(pending, done_ids)
        batches = graph.generate_batches()
        summary = graph.get_execution_summary()

        if self.uses_workflow:
            resolve_steps(self.workflow, self.workflow_options)

        self._run = self._start_run_context(resume)
        self._metadata = CheckpointMetadata(
            total_items=len(items),
            source_ref=str(self.source.path),
            branch=document.branch_name or None,
        )

        state = self.state_store.initialize(limit, self.source.path)
        state = self.state_store.update(
            total_batches=len(batches),
            completed_ids=list(done_ids),
        ) or state
        if done_ids:
            self._run.completed_ids.update(done_ids)
            self.state_store.log_progress(f"Resuming: {len(done_ids)} item(s) already pass")

        self.console.print(
            f"[bold]Running {len(pending)} of {len(items)} item(s) "
            f"in {len(batches)} batch(es)[/bold]"
        )
        self.console.print(create_plan_table(batches, summary))

        try:
            for batch in batches:
                state = self.state_store.load() or state
                if self._should_stop(state, len(items)):
                    break
                if not self.state_store.validate_source_exists():
                    logger.warning("Work-item source disappeared; write-backs will be skipped")
                elif self.state_store.has_source_changed():
                    logger.warning("Work-item source changed externally; continuing with the plan")
                    self.state_store.log_progress("WARNING: work-item source changed during run")

                await self.execute_batch(batch)
                self._save_checkpoint(batch.batch_number)
        except (PersistenceError, OSError) as exc:
            return self._stop_on_persistence_error(state, len(items), exc)

        return self._finalize(len(items))

    def _start_run_context(self, resume: bool) -> RunContext:
        if resume:
            checkpoint = self.checkpoint_store.load()
            if checkpoint is not None:
                try:
                    run = self.checkpoint_store.resume(checkpoint)
                except StaleCheckpointError as exc:
                    logger.warning("Ignoring checkpoint: %s", exc)
                else:
                    logger.info("Resuming run %s from batch %d", run.run_id, run.current_batch)
                    return run
        return create_run_context()

    def _should_stop(self, state: ExecutionState, total_items: int) -> bool:
        if state.max_iterations.is_unbounded:
            return len(state.completed_ids) >= total_items
        if state.max_iterations.reached(state.current_iteration):
            self.console.print(
                f"[yellow]Max iterations ({state.max_iterations}) reached[/yellow]"
            )
            self.state_store.log_progress(
                f"Max iterations reached: {state.current_iteration}/{state.max_iterations}"
            )
            self.state_store.set_status(RunStatus.FAILED)
            return True
        return False

    def _save_checkpoint(self, batch_number: int) -> None:
        if self._run is None or self._metadata is None:
            return
        self._run.current_batch = batch_number
        self.checkpoint_store.save(self._run, self._metadata, self.checkpoint_options)

    def _finalize(self, total_items: int) -> ExecutionState:
        state = self.state_store.load()
        if state is None:
            raise RunnerError("Execution state disappeared during the run")

        if state.status == RunStatus.RUNNING:
            final = RunStatus.COMPLETED if not state.failed_ids else RunStatus.FAILED
            state = self.state_store.set_status(final) or state

        if state.status == RunStatus.COMPLETED:
            self.checkpoint_store.clear()

        print_summary(state, total_items, self.console)
        self.state_store.cleanup_on_complete()
        return state

    def _stop_on_persistence_error(
        self, state: ExecutionState, total_items: int, exc: Exception
    ) -> ExecutionState:
        """End the run as failed once its progress can no longer be recorded.

        The checkpoint is kept so the run can be resumed.
        """
        logger.error("Stopping run: progress could not be recorded: %s", exc)
        self.console.print(
            f"[red]Run stopped, progress could not be recorded:[/red] {escape(str(exc))}"
        )
        try:
            state = self.state_store.set_status(RunStatus.FAILED) or state
        except (PersistenceError, OSError) as status_exc:
            logger.error("Could not persist the failed status: %s", status_exc)
        state = replace(state, status=RunStatus.FAILED, in_progress_id=None)
        print_summary(state, total_items, self.console)
        return state

    # ------------------------------------------------------------------
    # Batches and items
    # ------------------------------------------------------------------

    async def execute_batch(self, batch: Batch) -> list[InvocationResult]:
        """Run every item of ``batch``; parallel batches fan out together.

        Sibling failures never cancel the rest of the batch. Item failures are
        recorded as results; an error while recording one (state or log not
        writable) is raised once every started item has finished.
        """
        mode = "parallel" if batch.can_run_in_parallel else "sequential"
        self.console.print(
            f"\n[bold cyan]Batch {batch.batch_number}[/bold cyan] "
            f"({mode}): {', '.join(batch.item_ids)}"
        )
        self.state_store.log_progress(
            f"Batch {batch.batch_number} started: {', '.join(batch.item_ids)}"
        )

        results: list[InvocationResult] = []
        if batch.can_run_in_parallel:
            outcomes = await asyncio.gather(
                *(self.execute_item(item) for item in batch.items),
                return_exceptions=True,
            )
            # only bookkeeping errors escape execute_item
            errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
            if errors:
                raise errors[0]
            results.extend(outcomes)
        else:
            for item in batch.items:
                results.append(await self.execute_item(item))

        self.state_store.update(current_batch=batch.batch_number)
        return results

    async def execute_item(self, item: WorkItem) -> InvocationResult:
        """Execute one item and record its outcome."""
        self.state_store.set_in_progress(item.id)
        try:
            if self.uses_workflow:
                result = await self._execute_with_workflow(item)
            else:
                result = await self._execute_with_spec(item)
        except Exception as exc:
            logger.exception("Item %s failed with an unexpected error", item.id)
            result = InvocationResult(success=False, error=f"Unexpected error: {exc}")
        finally:
            self.state_store.set_in_progress(None)

        self.process_result(item, result)
        return result

    async def _execute_with_spec(self, item: WorkItem) -> InvocationResult:
        spec = self.spec_generator.generate(item)
        validation = self.spec_generator.validate(spec)
        if not validation.valid:
            reason = "Spec validation failed: " + "; ".join(validation.gaps)
            return InvocationResult(success=False, error=reason)
        for warning in validation.warnings:
            logger.debug("Spec warning for %s: %s", item.id, warning)

        self.spec_generator.write(spec)
        return await self.invoker.invoke(item, spec)

    async def _execute_with_workflow(self, item: WorkItem) -> InvocationResult:
        run = await self.workflow_engine.execute(item, self.workflow, self.workflow_options)
        logger.debug(WorkflowStepEngine.get_summary(run))
        if run.success:
            return InvocationResult(success=True, output=_workflow_output(run))
        failed = next((r for r in run.results if not r.success), None)
        error = f"Step {failed.step} failed: {failed.error}" if failed else "No workflow steps ran"
        return InvocationResult(success=False, output=_workflow_output(run), error=error)

    def process_result(self, item: WorkItem, result: InvocationResult) -> None:
        """Record ``result`` in the state, the source and the run context."""
        if result.success:
            self.console.print(f"  [green]✓[/green] {item.id}: {escape(item.title)}")
            notes = result.output
        else:
            self.console.print(f"  [red]✗[/red] {item.id}: {escape(result.error or '')}")
            notes = result.error or "Unknown error"

        self.state_store.mark_item_result(item.id, result.success, result.error)

        try:
            if self.source.update_item(item.id, passes=result.success, notes=notes):
                self.state_store.update(source_hash=self.source.content_hash())
        except RunnerError as exc:
            logger.warning("Could not write result of %s back to the source: %s", item.id, exc)

        if self._run is not None:
            self._run.context[item.id] = notes
            if result.success:
                self._run.completed_ids.add(item.id)
                self._run.failed_items.pop(item.id, None)
            else:
                previous = self._run.failed_items.get(item.id)
                retries = previous.retry_count + 1 if previous else 0
                self._run.failed_items[item.id] = FailedItem(
                    reason=result.error or "Unknown error", retry_count=retries
                )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self) -> str:
        """Text report of the persisted run state against the current plan."""
        state = self.state_store.load()
        archived = False
        if state is None:
            state = self.state_store.latest_archived()
            archived = state is not None
        if state is None:
            return "No execution state found."

        lines = [
            f"Session: {state.session_id}{' (archived)' if archived else ''}",
            f"Status: {state.status}",
            f"Iteration: {state.current_iteration}/{state.max_iterations}",
            f"Batch: {state.current_batch}/{state.total_batches}",
            f"Duration: {ExecutionStateStore.get_duration(state)}",
            f"Source: {state.source_ref}",
        ]
        if self.source.exists():
            items = self.source.load()
            lines.append(f"Completed: {len(state.completed_ids)}/{len(items)}")
        else:
            lines.append(f"Completed: {len(state.completed_ids)} (source missing)")
        if state.in_progress_id:
            lines.append(f"In progress: {state.in_progress_id}")
        if state.failed_ids:
            lines.append("Failed:")
            for item_id, failure in state.failed_ids.items():
                retry = f" (retries: {failure.retry_count})" if failure.retry_count else ""
                lines.append(f"  {item_id}: {failure.reason}{retry}")
        if not archived and self.state_store.has_source_changed():
            lines.append("WARNING: work-item source changed since the run started")
        if self.checkpoint_store.exists():
            lines.append("Checkpoint: available (use --resume)")
        return "\n".join(lines)


def _workflow_output(run: WorkflowRun) -> str:
    execute = run.result_for("execute")
    if execute is not None and execute.success and execute.output:
        return execute.output
    return "; ".join(f"{r.step}: {r.output}" for r in run.results if r.success)


__all__ = ["Orchestrator", "GraphFactory"]
