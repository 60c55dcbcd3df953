"""Quota-aware retry around the agent network.

Provider quota errors (HTTP 429, ``RESOURCE_EXHAUSTED``, "quota exceeded")
are retried with long backoffs; everything else propagates on the first
occurrence. Backoff waits are step sleeps, so a resumed run does not sleep
through backoffs it already served.
"""

import re
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from config import settings
from steps import StepExecutor

logger = structlog.get_logger()

T = TypeVar("T")

_QUOTA_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"resource[_ ]exhausted", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"quota", re.IGNORECASE),
    # Also matches class names such as RateLimitError
    re.compile(r"rate[\s_-]?limit", re.IGNORECASE),
]

_RETRY_HINT = re.compile(
    r"(?:retryDelay|retry_delay|retry-after)[\"'\s:=]*\"?(\d+(?:\.\d+)?)\s*s?\b",
    re.IGNORECASE,
)


class QuotaError(Exception):
    """Raised when quota errors persist through every retry."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def _error_chain(error: BaseException, max_depth: int = 5) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in chain and len(chain) < max_depth:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _serialize_error(error: BaseException) -> str:
    """Flatten an error and its causes into one searchable string."""
    parts: list[str] = []
    for err in _error_chain(error):
        parts.append(type(err).__name__)
        parts.append(str(err))
        parts.append(repr(err))
        status_code = getattr(err, "status_code", None)
        if status_code is not None:
            parts.append(f"status_code={status_code}")
        for attr in ("body", "message", "response"):
            value = getattr(err, attr, None)
            if value is not None:
                parts.append(str(value))
    return " ".join(parts)


def is_quota_error(error: BaseException) -> bool:
    """Return True if ``error`` signals an exhausted provider quota or rate limit."""
    for err in _error_chain(error):
        if getattr(err, "status_code", None) == 429:
            return True
    text = _serialize_error(error)
    return any(pattern.search(text) for pattern in _QUOTA_PATTERNS)


def parse_retry_hint_ms(error: BaseException) -> int | None:
    """Extract the provider's suggested retry delay in milliseconds, if any.

    Examples:
        >>> parse_retry_hint_ms(Exception('{"retryDelay": "3s"}'))
        3000
    """
    match = _RETRY_HINT.search(_serialize_error(error))
    if not match:
        return None
    return int(float(match.group(1)) * 1000)


def compute_delay_ms(
    error: BaseException,
    attempt: int,
    default_delay_ms: int = 120_000,
    base_delay_ms: int = 60_000,
) -> int:
    """Backoff before retry number ``attempt + 1``.

    The first backoff honours the provider hint (or ``default_delay_ms``);
    later ones grow as ``base_delay_ms * 2**attempt``.
    """
    if attempt == 0:
        hint = parse_retry_hint_ms(error)
        return hint if hint is not None else default_delay_ms
    return base_delay_ms * 2**attempt


class QuotaRetryController:
    """Re-run a coroutine function while it fails with quota errors.

    Attributes:
        max_retries: Retries after the first attempt.
        default_delay_ms: First backoff when the provider gives no hint.
        base_delay_ms: Base of the exponential backoff.
    """

    def __init__(
        self,
        max_retries: int = 5,
        default_delay_ms: int = 120_000,
        base_delay_ms: int = 60_000,
    ) -> None:
        self.max_retries = max_retries
        self.default_delay_ms = default_delay_ms
        self.base_delay_ms = base_delay_ms

    @classmethod
    def from_settings(cls) -> "QuotaRetryController":
        return cls(
            max_retries=settings.quota_max_retries,
            default_delay_ms=settings.quota_default_delay_ms,
            base_delay_ms=settings.quota_base_delay_ms,
        )

    async def run(self, fn: Callable[[], Awaitable[T]], steps: StepExecutor) -> T:
        """Run ``fn``, retrying on quota errors.

        Args:
            fn: Coroutine function to run; called once per attempt.
            steps: Step executor used for the backoff sleeps.

        Returns:
            The first successful result of ``fn``.

        Raises:
            QuotaError: If every attempt failed with a quota error.
            Exception: Any non-quota error raised by ``fn``, unchanged.
        """
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return await fn()
            except Exception as e:
                if not is_quota_error(e):
                    raise
                last_error = e
                if attempt >= self.max_retries:
                    break

                delay_ms = compute_delay_ms(
                    e, attempt, self.default_delay_ms, self.base_delay_ms
                )
                logger.warning(
                    "quota_backoff",
                    run_id=steps.run_id,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_ms=delay_ms,
                    error=str(e)[:200],
                )
                await steps.sleep(f"quota-backoff-{attempt}", delay_ms)

        logger.error(
            "quota_retries_exhausted", run_id=steps.run_id, attempts=self.max_retries + 1
        )
        raise QuotaError(
            f"Provider quota still exhausted after {self.max_retries + 1} attempts",
            attempts=self.max_retries + 1,
        ) from last_error


def root_cause(error: BaseException) -> BaseException:
    """Innermost error of an exception chain."""
    return _error_chain(error, max_depth=10)[-1]
