"""
Retry policy shared by every external call in the core.

An explicit bounded loop with exponential backoff and jitter. The sleep
function is injected so tests can run the whole schedule without waiting.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import RateLimitError, TransientIOError
from .logging_config import logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: ``base_delay * multiplier ** (attempt - 1)``, capped."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += rng() * self.jitter
        return delay

    def delay_for(self, error: Exception, attempt: int, rng: Callable[[], float] = random.random) -> float:
        delay = self.backoff(attempt, rng)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    description: str = "request",
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Only ``TransientIOError`` is retried. Anything else, including
    ``ExternalServiceError`` for 4xx answers, propagates on first sight.

    Raises:
        The last error once ``policy.max_attempts`` attempts have failed.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except TransientIOError as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    f"{description} failed after {attempt} attempts: {e.message}"
                )
                raise

            delay = policy.delay_for(e, attempt, rng)
            logger.warning(
                f"{description} failed ({e.message}), "
                f"retrying in {delay:.1f}s (attempt {attempt}/{policy.max_attempts})"
            )
            await sleep(delay)
