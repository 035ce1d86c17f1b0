"""Sliding-window request limiter per model tier.

Every worker in a process shares one ``ModelRateLimiter``; a slot is acquired
before each HTTP attempt. The flash and pro tiers have separate windows so a
burst on one model does not starve the other.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass

from atelier.core.config import RateLimitConfig
from atelier.core.logging import get_logger

_logger = get_logger("generation.rate_limiter")

# Added to the computed wait so the oldest request has left the window.
_WAIT_MARGIN_SECONDS = 0.1


@dataclass(frozen=True)
class RateLimiterStats:
    """Utilization of one tier's window."""

    active_requests: int
    max_requests: int
    queued_requests: int

    @property
    def available_slots(self) -> int:
        return max(self.max_requests - self.active_requests, 0)

    @property
    def utilization_percent(self) -> int:
        return round(self.active_requests * 100 / self.max_requests)


class SlidingWindowLimiter:
    """At most ``max_requests`` acquisitions per ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: deque[float] = deque()
        self._waiting = 0
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    async def acquire(self) -> float:
        """Wait for a slot and take it.

        Returns:
            Seconds spent waiting.
        """
        started = time.monotonic()
        self._waiting += 1
        try:
            # The lock keeps waiters in arrival order
            async with self._lock:
                while True:
                    now = time.monotonic()
                    self._evict(now)
                    if len(self._requests) < self.max_requests:
                        self._requests.append(now)
                        return now - started
                    wait = self.window_seconds - (now - self._requests[0]) + _WAIT_MARGIN_SECONDS
                    _logger.debug(
                        "rate_limit.waiting",
                        used=len(self._requests),
                        max_requests=self.max_requests,
                        queued=self._waiting,
                        wait_seconds=round(wait, 3),
                    )
                    await asyncio.sleep(max(wait, 0.0))
        finally:
            self._waiting -= 1

    def stats(self) -> RateLimiterStats:
        self._evict(time.monotonic())
        return RateLimiterStats(
            active_requests=len(self._requests),
            max_requests=self.max_requests,
            queued_requests=self._waiting,
        )

    def reset(self) -> None:
        self._requests.clear()


class ModelRateLimiter:
    """One sliding window per model tier (``flash`` and ``pro``)."""

    def __init__(self, config: RateLimitConfig | None = None) -> None:
        self.config = config or RateLimitConfig()
        self._limiters = {
            "flash": SlidingWindowLimiter(
                self.config.flash_requests_per_window, self.config.window_seconds
            ),
            "pro": SlidingWindowLimiter(
                self.config.pro_requests_per_window, self.config.window_seconds
            ),
        }
        _logger.info(
            "rate_limit.initialized",
            enabled=self.config.enabled,
            flash=self.config.flash_requests_per_window,
            pro=self.config.pro_requests_per_window,
            window_seconds=self.config.window_seconds,
        )

    @staticmethod
    def tier_for(model: str) -> str:
        return "pro" if "pro" in model.lower() else "flash"

    async def acquire(self, model: str) -> None:
        if not self.config.enabled:
            return
        tier = self.tier_for(model)
        waited = await self._limiters[tier].acquire()
        if waited > 1.0:
            _logger.info("rate_limit.slot_acquired", tier=tier, model=model, waited_seconds=round(waited, 1))

    def stats(self) -> dict[str, RateLimiterStats]:
        return {tier: limiter.stats() for tier, limiter in self._limiters.items()}

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()


__all__ = ["ModelRateLimiter", "RateLimiterStats", "SlidingWindowLimiter"]
