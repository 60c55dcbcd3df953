"""Throttling for provider-facing calls.

Two independent mechanisms keep a workflow run under the LLM and compute
provider limits:

- ``PacingPolicy``: a fixed minimum spacing inserted before every tool call
  (scaled by batch size for file writes). The delay is executed as a named
  step sleep so a resumed run does not wait twice.
- ``RateLimiter``: a sliding-window RPM/TPM limiter shared by all LLM calls
  in the process.

Usage:
    >>> from rate_limiter import get_rate_limiter
    >>> limiter = get_rate_limiter()
    >>> reservation = await limiter.acquire(estimated_tokens=1500)
    >>> # ... make LLM call ...
    >>> limiter.record_usage(reservation, tokens_used=1234)
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass

import structlog

from config import settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PacingPolicy:
    """Minimum inter-call spacing applied before each tool invocation.

    Attributes:
        base_delay_ms: Delay before any tool call.
        per_file_delay_ms: Additional delay for each file beyond the first
            in a ``write_files`` batch.
        max_delay_ms: Upper bound for a single delay.
    """

    base_delay_ms: int = 500
    per_file_delay_ms: int = 250
    max_delay_ms: int = 3000

    def delay_ms(self, tool_name: str, batch_size: int = 1) -> int:
        """Return the pacing delay for one call of ``tool_name``."""
        delay = self.base_delay_ms
        if tool_name == "write_files" and batch_size > 1:
            delay += self.per_file_delay_ms * (batch_size - 1)
        return max(0, min(delay, self.max_delay_ms))

    @classmethod
    def from_settings(cls) -> "PacingPolicy":
        return cls(
            base_delay_ms=settings.pacing_base_delay_ms,
            per_file_delay_ms=settings.pacing_per_file_delay_ms,
            max_delay_ms=settings.pacing_max_delay_ms,
        )


class RateLimitExceededError(Exception):
    """Raised when the rate limiter wait deadline is exceeded."""


class RateLimiter:
    """Sliding-window limiter for LLM API calls.

    Tracks ``(timestamp, tokens, reservation)`` for every call in the last 60 seconds and
    makes ``acquire()`` wait while either the request or the token budget of
    that window is used up.

    Attributes:
        max_calls_per_minute: Maximum API calls allowed per 60-second window.
        max_tokens_per_minute: Maximum tokens allowed per 60-second window.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        max_calls_per_minute: int = 15,
        max_tokens_per_minute: int = 250_000,
    ) -> None:
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._window: deque[tuple[float, int, int]] = deque()
        self._reservations = itertools.count(1)
        self._lock = asyncio.Lock()

        logger.info(
            "rate_limiter_initialized",
            max_rpm=max_calls_per_minute,
            max_tpm=max_tokens_per_minute,
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.WINDOW_SECONDS
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _tokens_in_window(self) -> int:
        return sum(tokens for _, tokens, _ in self._window)

    def _has_capacity(self, estimated_tokens: int) -> bool:
        if len(self._window) >= self.max_calls_per_minute:
            return False
        return self._tokens_in_window() + estimated_tokens <= self.max_tokens_per_minute

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 120.0,
    ) -> int:
        """Wait until a new request fits in the window, then reserve it.

        Args:
            estimated_tokens: Estimated tokens for the upcoming request.
            max_wait_seconds: Maximum time to wait before giving up.

        Returns:
            Reservation id to pass to ``record_usage``.

        Raises:
            RateLimitExceededError: If the deadline is exceeded.
        """
        deadline = time.monotonic() + max_wait_seconds

        while True:
            async with self._lock:
                now = time.monotonic()
                self._prune(now)

                if self._has_capacity(estimated_tokens):
                    reservation = next(self._reservations)
                    self._window.append((now, estimated_tokens, reservation))
                    return reservation

                if now >= deadline:
                    raise RateLimitExceededError(
                        f"Rate limiter wait exceeded {max_wait_seconds}s deadline"
                    )

                # The oldest entry leaving the window is the earliest point
                # where capacity can free up.
                wait_seconds = max(
                    self._window[0][0] + self.WINDOW_SECONDS - now, 0.1
                ) if self._window else 0.1
                wait_seconds = min(wait_seconds, deadline - now)

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(wait_seconds, 2),
                calls_in_window=len(self._window),
            )
            await asyncio.sleep(wait_seconds)

    def record_usage(self, reservation: int, tokens_used: int) -> None:
        """Replace the estimate of ``reservation`` with the actual usage.

        Reservations already pruned from the window are ignored.
        """
        for index, (timestamp, _estimated, entry) in enumerate(self._window):
            if entry == reservation:
                self._window[index] = (timestamp, tokens_used, reservation)
                return


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide RateLimiter, creating it from settings on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            max_calls_per_minute=settings.llm_rate_limit_rpm,
            max_tokens_per_minute=settings.llm_rate_limit_tpm,
        )
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the process-wide RateLimiter. Primarily useful for testing."""
    global _rate_limiter
    _rate_limiter = None
