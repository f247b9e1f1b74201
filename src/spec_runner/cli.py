"""Command line interface for spec-runner.

Commands:
    - run: execute the work items of ``.runner/items.json`` in batches
    - status: show the current (or last archived) run
    - graph: show the dependency graph and the batch plan
    - clean: delete live state, progress log and checkpoint
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from typing_extensions import Annotated

from spec_runner.agents import AgentInvoker, CommandInvoker, SimulatedInvoker
from spec_runner.checkpoint import CHECKPOINT_DIRNAME, CheckpointStore, SaveOptions
from spec_runner.config import RUN_DIRNAME, RunnerConfig, load_config
from spec_runner.display import create_plan_table, create_status_table
from spec_runner.errors import RunnerError, ValidationError
from spec_runner.graph import WorkItemGraph
from spec_runner.models import IterationLimit, RunStatus
from spec_runner.orchestrator import Orchestrator
from spec_runner.source import SOURCE_FILENAME, WorkItemSource
from spec_runner.specgen import CURRENT_SPEC_FILENAME, SpecGenerator
from spec_runner.state import ExecutionStateStore
from spec_runner.workflow.config import get_workflow
from spec_runner.workflow.engine import WorkflowStepEngine

logger = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    name="spec-runner",
    help="""
    Run interdependent work items in dependency-ordered parallel batches.

    \b
    USAGE EXAMPLES:
      spec-runner graph
      spec-runner run --max-iterations 20
      spec-runner run --workflow spec-first --resume
      spec-runner status
      spec-runner clean

    Work items live in .runner/items.json; settings in .runner/config.yaml.
    """,
    no_args_is_help=True,
)

ProjectDir = Annotated[
    Path,
    typer.Option("--project-dir", "-C", help="Project root containing .runner/"),
]


# =============================================================================
# Wiring
# =============================================================================


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _stores(run_dir: Path, config: RunnerConfig) -> tuple[ExecutionStateStore, CheckpointStore]:
    state_store = ExecutionStateStore(
        run_dir,
        max_progress_lines=config.retention.progress_lines,
        max_archived_states=config.retention.archive_keep,
        archive_max_age_hours=config.retention.archive_max_age_hours,
    )
    return state_store, CheckpointStore(run_dir / CHECKPOINT_DIRNAME)


def _build_invoker(project_dir: Path, run_dir: Path, config: RunnerConfig) -> AgentInvoker:
    if not config.agent.command:
        logger.info("No agent command configured; using the simulated agent")
        return SimulatedInvoker()
    return CommandInvoker(
        config.agent.command,
        working_dir=project_dir,
        spec_path=run_dir / CURRENT_SPEC_FILENAME,
        timeout_seconds=config.agent.timeout_seconds,
    )


def build_orchestrator(
    project_dir: Path,
    config: RunnerConfig,
    workflow_name: str | None = None,
    out: Console | None = None,
) -> Orchestrator:
    """Wire the file-backed collaborators of ``project_dir/.runner``."""
    run_dir = project_dir / RUN_DIRNAME
    state_store, checkpoint_store = _stores(run_dir, config)
    spec_generator = SpecGenerator(run_dir)
    invoker = _build_invoker(project_dir, run_dir, config)

    workflow_id = workflow_name or config.workflow
    workflow = get_workflow(run_dir, workflow_id) if workflow_id else None
    engine = WorkflowStepEngine(spec_generator, invoker) if workflow else None

    return Orchestrator(
        WorkItemSource(run_dir / SOURCE_FILENAME),
        state_store,
        checkpoint_store,
        spec_generator,
        invoker,
        workflow_engine=engine,
        workflow=workflow,
        workflow_options=config.workflow_options,
        checkpoint_options=SaveOptions(
            include_context=config.checkpoint.include_context,
            max_context_size=config.checkpoint.max_context_size,
        ),
        console=out or console,
    )


def _report_error(exc: RunnerError) -> None:
    console.print(f"[red]Error:[/red] {escape(str(exc))}")
    if isinstance(exc, ValidationError):
        for message in exc.errors:
            console.print(f"  - {escape(message)}")


# =============================================================================
# Commands
# =============================================================================


@app.command()
def run(
    max_iterations: Annotated[
        Optional[str],
        typer.Option("--max-iterations", help="Item-execution budget: a number or 'unbounded'"),
    ] = None,
    workflow: Annotated[
        Optional[str],
        typer.Option("--workflow", help="Run each item through this workflow"),
    ] = None,
    resume: Annotated[
        bool,
        typer.Option("--resume", help="Skip items that already pass"),
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    project_dir: ProjectDir = Path("."),
) -> None:
    """Execute all work items in dependency-ordered batches."""
    _configure_logging(verbose)
    try:
        limit = IterationLimit.parse(max_iterations) if max_iterations is not None else None
    except ValueError as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(1)

    try:
        config = load_config(project_dir / RUN_DIRNAME)
        orchestrator = build_orchestrator(project_dir, config, workflow)
        state = asyncio.run(orchestrator.execute(limit or config.max_iterations, resume=resume))
    except RunnerError as exc:
        _report_error(exc)
        raise typer.Exit(1)

    if state.status != RunStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def status(project_dir: ProjectDir = Path(".")) -> None:
    """Show the current or last archived run."""
    try:
        orchestrator = build_orchestrator(project_dir, load_config(project_dir / RUN_DIRNAME))
        console.print(orchestrator.get_status(), markup=False, highlight=False)
        state = orchestrator.state_store.load()
        if state is not None and orchestrator.source.exists():
            console.print(create_status_table(state, orchestrator.source.load()))
    except RunnerError as exc:
        _report_error(exc)
        raise typer.Exit(1)


@app.command()
def graph(project_dir: ProjectDir = Path(".")) -> None:
    """Show the dependency graph and the planned batches."""
    source = WorkItemSource(project_dir / RUN_DIRNAME / SOURCE_FILENAME)
    try:
        item_graph = WorkItemGraph(source.load())
        batches = item_graph.generate_batches()
        console.print(item_graph.visualize(), markup=False, highlight=False)
        console.print(create_plan_table(batches, item_graph.get_execution_summary()))
    except RunnerError as exc:
        _report_error(exc)
        raise typer.Exit(1)


@app.command()
def clean(project_dir: ProjectDir = Path(".")) -> None:
    """Delete live state, progress log and checkpoint. The archive is kept."""
    run_dir = project_dir / RUN_DIRNAME
    try:
        state_store, checkpoint_store = _stores(run_dir, load_config(run_dir))
    except RunnerError as exc:
        _report_error(exc)
        raise typer.Exit(1)
    state_store.clear()
    checkpoint_store.clear()
    console.print(f"[green]Cleaned[/green] {run_dir}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
