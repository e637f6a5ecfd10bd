"""Shared retry with exponential backoff for external calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from feed_curator.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE: tuple[type[BaseException], ...] = (TransientError, asyncio.TimeoutError)


@dataclass
class RetryPolicy:
    """Attempt count and delays for ``retry_async``."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay after the 0-based ``attempt``, honoring a server hint."""
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        return min(self.initial_delay * (2 ** attempt), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "external call",
    retry_on: tuple[type[BaseException], ...] = RETRYABLE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is spent.

    Only exceptions in ``retry_on`` are retried; anything else propagates at
    once. The last retryable exception is re-raised when attempts run out.
    """
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt == policy.max_attempts - 1:
                logger.warning(
                    "%s failed after %d attempt(s): %s", description, policy.max_attempts, e or type(e).__name__
                )
                raise
            delay = policy.delay_for(attempt, getattr(e, "retry_after", None))
            logger.warning(
                "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                description,
                e or type(e).__name__,
                delay,
                attempt + 1,
                policy.max_attempts,
            )
            await sleep(delay)

    raise RuntimeError("unreachable: retry loop exited without result")
