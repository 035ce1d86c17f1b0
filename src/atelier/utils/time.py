"""Time utilities for Atelier.

Provides timezone-aware datetime helpers and millisecond conversions used by
the worker and the generation client.
"""

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    Returns:
        datetime: Current UTC time with tzinfo=UTC
    """
    return datetime.now(UTC)


def elapsed_ms(started: float) -> int:
    """Milliseconds elapsed since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)
