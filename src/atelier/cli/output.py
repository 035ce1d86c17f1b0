"""Rich output formatting for the Atelier CLI."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from atelier.core.models import BatchResult, BatchStatus, Execution, ExecutionStatus
from atelier.queue.base import JobState, JobStatusInfo

console = Console()


class StatusColors:
    """Color mappings for status values."""

    EXECUTION_STATUS: dict[ExecutionStatus, str] = {
        ExecutionStatus.QUEUED: "yellow",
        ExecutionStatus.PROCESSING: "blue",
        ExecutionStatus.COMPLETED: "green",
        ExecutionStatus.FAILED: "red",
    }

    BATCH_STATUS: dict[BatchStatus, str] = {
        BatchStatus.PENDING: "yellow",
        BatchStatus.PROCESSING: "blue",
        BatchStatus.COMPLETED: "green",
        BatchStatus.FAILED: "red",
    }

    JOB_STATE: dict[JobState, str] = {
        JobState.WAITING: "yellow",
        JobState.DELAYED: "magenta",
        JobState.ACTIVE: "blue",
        JobState.COMPLETED: "green",
        JobState.FAILED: "red",
    }


def format_duration_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms}ms"
    return f"{ms / 1000:.1f}s"


def _truncate(text: str, width: int = 48) -> str:
    return text if len(text) <= width else text[: width - 1] + "…"


def execution_panel(execution: Execution) -> Panel:
    color = StatusColors.EXECUTION_STATUS.get(execution.status, "white")
    lines = [
        f"[bold]Status:[/bold] [{color}]{execution.status.value}[/{color}]",
        f"[bold]Progress:[/bold] {execution.progress}%",
        f"[bold]Workflow:[/bold] {execution.workflow_id}",
        f"[bold]Client:[/bold] {execution.client_id}",
    ]
    if execution.started_at:
        lines.append(f"[bold]Started:[/bold] {execution.started_at:%Y-%m-%d %H:%M:%S}")
    if execution.completed_at:
        lines.append(f"[bold]Completed:[/bold] {execution.completed_at:%Y-%m-%d %H:%M:%S}")
    if execution.duration_seconds is not None:
        lines.append(f"[bold]Duration:[/bold] {execution.duration_seconds}s")
    if execution.output:
        out = execution.output
        lines.append(
            f"[bold]Results:[/bold] {out.successful} succeeded, {out.failed} failed, "
            f"{out.total} total"
        )
    if execution.cancel_requested and not execution.is_terminal:
        lines.append("[magenta]Cancellation requested[/magenta]")
    if execution.error:
        lines.append(f"[red]Error:[/red] {execution.error}")
    return Panel("\n".join(lines), title=f"Execution {execution.id}", expand=False)


def batch_results_table(results: list[BatchResult]) -> Table:
    table = Table(title="Batch results", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Prompt")
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Result / Error")
    for r in results:
        color = StatusColors.BATCH_STATUS.get(r.status, "white")
        detail = r.result_url or (f"[red]{r.error_message}[/red]" if r.error_message else "")
        table.add_row(
            str(r.batch_index),
            _truncate(r.prompt_text),
            f"[{color}]{r.status.value}[/{color}]",
            format_duration_ms(r.processing_time_ms),
            detail,
        )
    return table


def job_status_table(info: JobStatusInfo) -> Table:
    color = StatusColors.JOB_STATE.get(info.state, "white")
    table = Table(title=f"Job {info.job_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("State", f"[{color}]{info.state.value}[/{color}]")
    table.add_row("Attempts", f"{info.attempts_made}/{info.max_attempts}")
    if info.failed_reason:
        table.add_row("Last failure", info.failed_reason)
    return table


def queue_counts_table(counts: dict[JobState, int]) -> Table:
    table = Table(title="Queue")
    for state in JobState:
        table.add_column(state.value, justify="right")
    table.add_row(*(str(counts.get(state, 0)) for state in JobState))
    return table
