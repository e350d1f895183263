"""Bounded async retry with exponential backoff.

Retry decisions come from the error taxonomy (``CompletionError.retryable``),
never from message text. Each retry re-issues the identical request, so the
number of transport calls equals the number of attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from switchboard.errors import CompletionError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ServerError/NetworkError; rate limits only when opted in."""

    max_attempts: int = 3
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True
    retry_rate_limits: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, asyncio.CancelledError):
            return False
        if isinstance(exc, RateLimitError):
            return self.retry_rate_limits
        if isinstance(exc, CompletionError):
            return exc.retryable
        return False

    def backoff_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (1-based)."""
        base = self.initial_delay_s * (self.backoff_multiplier ** max(0, retry_index - 1))
        base = min(self.max_delay_s, base)
        if base <= 0:
            return 0.0
        if not self.jitter:
            return base
        # Jitter in [base/2, base] keeps the exponential shape
        return base / 2 + random.random() * base / 2  # noqa: S311


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay_s=0.0, jitter=False)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation: str = "completion",
) -> T:
    """Run an async factory with bounded retries."""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise

            delay = policy.backoff_delay(attempt)
            if isinstance(exc, RateLimitError) and exc.retry_after_seconds is not None:
                delay = max(delay, exc.retry_after_seconds)

            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    # max_attempts >= 1, so the loop always returns or raises
    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
