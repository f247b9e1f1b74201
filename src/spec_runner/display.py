"""Rich rendering for runs: batch plan, status table and summary panel."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from spec_runner.models import Batch, ExecutionState, ExecutionSummary, RunStatus, WorkItem, utc_now

STATUS_COLORS = {
    RunStatus.RUNNING: "green",
    RunStatus.PAUSED: "yellow",
    RunStatus.COMPLETED: "bright_green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "yellow",
}


def format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def create_plan_table(batches: list[Batch], summary: ExecutionSummary) -> Table:
    """Table with one row per batch."""
    table = Table(
        title="[bold]Execution Plan[/bold]",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Batch", style="cyan", width=6)
    table.add_column("Items")
    table.add_column("Mode", width=10)

    for batch in batches:
        mode = "parallel" if batch.can_run_in_parallel else "sequential"
        table.add_row(str(batch.batch_number), ", ".join(batch.item_ids), mode)

    table.caption = (
        f"{summary.total_items} items | max parallel {summary.max_parallel_items} | "
        f"critical path: {' -> '.join(summary.critical_path) or '-'}"
    )
    return table


def create_status_table(state: ExecutionState, items: list[WorkItem]) -> Table:
    """Per-item status of a run."""
    table = Table(
        title=f"[bold]Session {state.session_id[:8]}[/bold]",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Item", style="cyan", width=10)
    table.add_column("Status", width=14)
    table.add_column("Priority", width=8)
    table.add_column("Notes")

    completed = set(state.completed_ids)
    for item in items:
        if item.id == state.in_progress_id:
            status, note = "[blue]in progress[/blue]", "-"
        elif item.id in completed:
            status, note = "[green]done[/green]", "-"
        elif item.id in state.failed_ids:
            failed = state.failed_ids[item.id]
            status = "[red]failed[/red]"
            note = escape(failed.reason)
            if failed.retry_count:
                note += f" (retries: {failed.retry_count})"
        elif item.passes:
            status, note = "[green]passes[/green]", "-"
        else:
            status, note = "[dim]pending[/dim]", "-"
        table.add_row(item.id, status, str(item.priority), note)

    color = STATUS_COLORS.get(state.status, "white")
    table.caption = (
        f"Status: [{color}]{state.status}[/{color}] | "
        f"Iteration {state.current_iteration}/{state.max_iterations} | "
        f"Batch {state.current_batch}/{state.total_batches}"
    )
    return table


def print_summary(state: ExecutionState, total_items: int, console: Console) -> None:
    """Print the end-of-run summary panel."""
    duration = (utc_now() - state.start_time).total_seconds()
    completed = len(state.completed_ids)
    failed = len(state.failed_ids)

    if state.status == RunStatus.COMPLETED:
        status_color, status_text = "green", "COMPLETED SUCCESSFULLY"
    elif state.status == RunStatus.FAILED and completed:
        status_color, status_text = "yellow", "FINISHED WITH FAILURES"
    else:
        status_color, status_text = "red", str(state.status).upper()

    content = (
        f"[bold {status_color}]{status_text}[/bold {status_color}]\n\n"
        f"[bold]Session:[/bold] {state.session_id}\n"
        f"[bold]Duration:[/bold] {format_elapsed(duration)}\n"
        f"\n"
        f"[bold]Work Items:[/bold]\n"
        f"  Total:      {total_items}\n"
        f"  Completed:  {completed}\n"
        f"  Failed:     {failed}\n"
        f"  Iterations: {state.current_iteration}/{state.max_iterations}\n"
        f"  Batches:    {state.current_batch}/{state.total_batches}"
    )

    console.print()
    console.print(Panel(content, title="Run Summary", border_style=status_color))

    if state.failed_ids:
        console.print("\n[red]Failed Work Items:[/red]")
        for item_id, failure in state.failed_ids.items():
            reason = failure.reason
            if len(reason) > 80:
                reason = reason[:80] + "..."
            console.print(f"  {item_id}: {escape(reason)}")
        console.print("\nSee progress.log in the run directory for details")

    console.print()


__all__ = [
    "format_elapsed",
    "create_plan_table",
    "create_status_table",
    "print_summary",
]
