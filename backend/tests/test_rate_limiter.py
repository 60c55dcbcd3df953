"""Tests for rate_limiter.py -- tool pacing and the LLM rate limiter."""

import pytest

from rate_limiter import (
    PacingPolicy,
    RateLimiter,
    RateLimitExceededError,
    get_rate_limiter,
    reset_rate_limiter,
)


class TestPacingPolicy:
    def test_base_delay(self) -> None:
        policy = PacingPolicy(base_delay_ms=500, per_file_delay_ms=250, max_delay_ms=3000)
        assert policy.delay_ms("terminal") == 500
        assert policy.delay_ms("read_files", batch_size=5) == 500

    def test_write_batch_adds_per_file_delay(self) -> None:
        policy = PacingPolicy(base_delay_ms=500, per_file_delay_ms=250, max_delay_ms=3000)
        assert policy.delay_ms("write_files", batch_size=1) == 500
        assert policy.delay_ms("write_files", batch_size=3) == 1000

    def test_capped_by_max_delay(self) -> None:
        policy = PacingPolicy(base_delay_ms=500, per_file_delay_ms=250, max_delay_ms=3000)
        assert policy.delay_ms("write_files", batch_size=50) == 3000

    def test_zero_disables_pacing(self) -> None:
        policy = PacingPolicy(base_delay_ms=0, per_file_delay_ms=0, max_delay_ms=0)
        assert policy.delay_ms("write_files", batch_size=4) == 0


class TestRateLimiter:
    async def test_acquire_within_limits(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=2, max_tokens_per_minute=10_000)
        await limiter.acquire(estimated_tokens=100)
        await limiter.acquire(estimated_tokens=100)

    async def test_request_limit_exceeded(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=1, max_tokens_per_minute=10_000)
        await limiter.acquire(estimated_tokens=100)

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)

    async def test_token_limit_exceeded(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=1000)
        await limiter.acquire(estimated_tokens=900)

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(estimated_tokens=200, max_wait_seconds=0)

    async def test_record_usage_replaces_estimate(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=1000)
        reservation = await limiter.acquire(estimated_tokens=900)
        limiter.record_usage(reservation, 100)

        await limiter.acquire(estimated_tokens=800, max_wait_seconds=0)

    async def test_record_usage_targets_its_own_reservation(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=1000)
        first = await limiter.acquire(estimated_tokens=500)
        # A concurrent call reserves after the first one
        await limiter.acquire(estimated_tokens=100)

        limiter.record_usage(first, 50)

        # 50 + 100 used: 850 more fit, which would fail had the newer
        # reservation been overwritten instead (500 + 50 + 850 > 1000)
        await limiter.acquire(estimated_tokens=850, max_wait_seconds=0)

    async def test_record_usage_of_unknown_reservation_is_ignored(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=1000)
        await limiter.acquire(estimated_tokens=900)

        limiter.record_usage(12345, 0)

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(estimated_tokens=200, max_wait_seconds=0)

    async def test_reservations_are_distinct(self) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=10_000)
        first = await limiter.acquire(estimated_tokens=10)
        second = await limiter.acquire(estimated_tokens=10)
        assert first != second

    def test_singleton_reset(self) -> None:
        reset_rate_limiter()
        first = get_rate_limiter()
        assert get_rate_limiter() is first
        reset_rate_limiter()
        assert get_rate_limiter() is not first
        reset_rate_limiter()
