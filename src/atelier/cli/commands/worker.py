"""``atelier worker``: run the worker pool until interrupted."""

from __future__ import annotations

import asyncio
import signal

import typer

from atelier.core.config import AtelierConfig
from atelier.core.logging import get_logger

from ..helpers import configure_cli_logging, create_pool, load_config
from ..output import console

_logger = get_logger("cli.worker")


def worker(
    pool_size: int | None = typer.Option(
        None,
        "--pool-size",
        "-n",
        min=1,
        max=32,
        help="Concurrent jobs (overrides worker.pool_size)",
    ),
) -> None:
    """Drain the job queue until SIGINT/SIGTERM.

    On shutdown the pool stops taking jobs and waits for in-flight batches
    (up to worker.shutdown_timeout_seconds) before exiting.
    """
    config = load_config(console)
    if pool_size is not None:
        config = config.model_copy(
            update={"worker": config.worker.model_copy(update={"pool_size": pool_size})}
        )
    configure_cli_logging(config, console)
    console.print(
        f"[bold]Atelier worker[/bold] pool_size={config.worker.pool_size} "
        f"queue={config.queue.name}"
    )
    asyncio.run(_run_worker(config))
    console.print("[dim]Worker stopped[/dim]")


async def _run_worker(config: AtelierConfig) -> None:
    pool, client = create_pool(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.request_stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            _logger.debug("signal_handler_unsupported", signal=sig.name)

    await pool.start()
    try:
        await pool.wait_until_stopped()
    finally:
        await pool.shutdown(graceful=True)
        await client.close()
        await pool.queue.close()
