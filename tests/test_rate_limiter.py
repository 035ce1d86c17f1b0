"""Tests for the per-model sliding-window rate limiter."""

from unittest.mock import patch

import pytest

from atelier.core.config import RateLimitConfig
from atelier.generation.rate_limiter import ModelRateLimiter, SlidingWindowLimiter


class TestSlidingWindowLimiter:
    """Tests for a single window."""

    async def test_within_limit_is_immediate(self):
        limiter = SlidingWindowLimiter(max_requests=3, window_seconds=60)
        for _ in range(3):
            assert await limiter.acquire() == pytest.approx(0.0, abs=0.05)
        stats = limiter.stats()
        assert stats.active_requests == 3
        assert stats.available_slots == 0
        assert stats.utilization_percent == 100

    async def test_waits_for_oldest_to_leave_window(self):
        """The fourth request sleeps until the first expires."""
        limiter = SlidingWindowLimiter(max_requests=1, window_seconds=0.2)
        await limiter.acquire()
        waited = await limiter.acquire()
        assert waited >= 0.19

    async def test_reset_clears_window(self):
        limiter = SlidingWindowLimiter(max_requests=1, window_seconds=60)
        await limiter.acquire()
        limiter.reset()
        assert limiter.stats().active_requests == 0


class TestModelRateLimiter:
    """Tests for tier routing."""

    @pytest.mark.parametrize(
        ("model", "tier"),
        [
            ("gemini-2.5-flash-image", "flash"),
            ("gemini-3-pro-image-preview", "pro"),
            ("something-else", "flash"),
        ],
    )
    def test_tier_for(self, model, tier):
        assert ModelRateLimiter.tier_for(model) == tier

    async def test_tiers_are_independent(self):
        limiter = ModelRateLimiter(RateLimitConfig(flash_requests_per_window=2, pro_requests_per_window=1))
        await limiter.acquire("gemini-2.5-flash-image")
        await limiter.acquire("gemini-3-pro-image-preview")
        stats = limiter.stats()
        assert stats["flash"].active_requests == 1
        assert stats["flash"].max_requests == 2
        assert stats["pro"].available_slots == 0

    async def test_disabled_limiter_never_waits(self):
        limiter = ModelRateLimiter(RateLimitConfig(enabled=False, flash_requests_per_window=1))
        with patch("atelier.generation.rate_limiter.asyncio.sleep") as mock_sleep:
            for _ in range(5):
                await limiter.acquire("gemini-2.5-flash-image")
        mock_sleep.assert_not_called()
        assert limiter.stats()["flash"].active_requests == 0
