"""Submission and inspection commands: enqueue, status, cancel, queue-status."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from pydantic import ValidationError

from atelier.core.config import AtelierConfig
from atelier.core.models import Execution, Job

from ..helpers import (
    ErrorMessages,
    configure_cli_logging,
    create_queue,
    create_store,
    load_config,
)
from ..output import (
    batch_results_table,
    console,
    execution_panel,
    job_status_table,
    queue_counts_table,
)


def _setup() -> AtelierConfig:
    config = load_config(console)
    configure_cli_logging(config, console)
    return config


def enqueue(
    job_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="JSON job payload (camelCase fields)",
    ),
) -> None:
    """Submit a batch job from a JSON file.

    Records a queued execution and adds the job to the queue. Submitting an
    execution id twice returns the existing job.
    """
    config = _setup()
    try:
        job = Job.from_payload(json.loads(job_file.read_text()))
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]{ErrorMessages.INVALID_JOB}:[/red] {e}")
        raise typer.Exit(1) from None
    asyncio.run(_enqueue(config, job))


async def _enqueue(config: AtelierConfig, job: Job) -> None:
    store = create_store(config)
    queue = create_queue(config)
    if await store.get_execution(job.execution_id) is None:
        await store.initialize_execution(Execution.for_job(job), [])
    handle = await queue.enqueue(job)
    await queue.close()
    if handle.attempt:
        console.print(
            f"[yellow]Job {handle.job_id} already known[/yellow] "
            f"({handle.attempt} deliveries so far)"
        )
    else:
        console.print(f"[green]Enqueued[/green] {handle.job_id} ({job.prompt_count} prompts)")


def status(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output execution and batch results as JSON",
    ),
) -> None:
    """Show an execution and its per-prompt results."""
    config = _setup()
    asyncio.run(_status(config, execution_id, json_output))


async def _status(config: AtelierConfig, execution_id: str, json_output: bool) -> None:
    store = create_store(config)
    execution = await store.get_execution(execution_id)
    if execution is None:
        console.print(f"[red]{ErrorMessages.EXECUTION_NOT_FOUND}:[/red] {execution_id}")
        raise typer.Exit(1)
    results = await store.list_batch_results(execution_id)
    if json_output:
        payload = {
            "execution": execution.model_dump(mode="json", by_alias=True),
            "batchResults": [r.model_dump(mode="json", by_alias=True) for r in results],
        }
        console.print_json(json.dumps(payload))
        return
    console.print(execution_panel(execution))
    if results:
        console.print(batch_results_table(results))


def cancel(
    execution_id: str = typer.Argument(..., help="Execution ID"),
) -> None:
    """Request cancellation of a running or queued execution.

    The worker stops before the next prompt; remaining prompts are failed.
    """
    config = _setup()
    asyncio.run(_cancel(config, execution_id))


async def _cancel(config: AtelierConfig, execution_id: str) -> None:
    store = create_store(config)
    if await store.request_cancel(execution_id):
        console.print(f"[green]Cancellation requested[/green] for {execution_id}")
        return
    execution = await store.get_execution(execution_id)
    if execution is None:
        console.print(f"[red]{ErrorMessages.EXECUTION_NOT_FOUND}:[/red] {execution_id}")
    else:
        console.print(
            f"[yellow]Execution {execution_id} is already {execution.status.value}[/yellow]"
        )
    raise typer.Exit(1)


def queue_status(
    job_id: str = typer.Argument(..., help="Job ID (same as the execution ID)"),
) -> None:
    """Show the broker's view of a job and per-state queue counts."""
    config = _setup()
    asyncio.run(_queue_status(config, job_id))


async def _queue_status(config: AtelierConfig, job_id: str) -> None:
    queue = create_queue(config)
    info = await queue.get_job_status(job_id)
    counts = await queue.counts()
    await queue.close()
    if info is None:
        console.print(f"[red]{ErrorMessages.JOB_NOT_FOUND}:[/red] {job_id}")
    else:
        console.print(job_status_table(info))
    console.print(queue_counts_table(counts))
    if info is None:
        raise typer.Exit(1)
