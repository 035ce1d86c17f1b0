"""Atelier CLI.

Package structure:
    cli/
    ├── __init__.py      # App assembly and global options
    ├── helpers.py       # Option state, config loading, component factories
    ├── output.py        # Rich formatting
    └── commands/
        ├── worker.py    # worker
        └── jobs.py      # enqueue, status, cancel, queue-status
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from atelier import __version__

from . import helpers as helpers
from .commands import cancel, enqueue, queue_status, status, worker
from .output import console

app = typer.Typer(
    name="atelier",
    help="Batch image generation engine",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Atelier v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="YAML configuration file",
            envvar="ATELIER_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="ATELIER_LOG_LEVEL",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log format: json or console",
            envvar="ATELIER_LOG_FORMAT",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            help="Path for log file output",
            envvar="ATELIER_LOG_FILE",
        ),
    ] = None,
) -> None:
    """Atelier - batch image generation engine."""
    options = helpers.get_options()
    options.config_path = config
    if log_level:
        level = log_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
        options.log_level = level  # type: ignore[assignment]
    if log_format:
        if log_format not in ("json", "console"):
            raise typer.BadParameter(
                f"Unknown log format: {log_format}", param_hint="--log-format"
            )
        options.log_format = log_format  # type: ignore[assignment]
    options.log_file = log_file


app.command()(worker)
app.command()(enqueue)
app.command()(status)
app.command()(cancel)
app.command(name="queue-status")(queue_status)


__all__ = ["app", "main", "console"]
