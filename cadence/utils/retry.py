from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    base: float = 1.5,
    jitter: float = 0.5,
    sleep: Callable[[int], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. The last retryable exception is re-raised.
    """

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                f"Attempt {attempt}/{attempts} failed: {exc}; retrying"
            )
            if sleep is not None:
                await sleep(attempt)
            else:
                await schedule_retry(attempt, base=base, jitter=jitter)
    raise RuntimeError("unreachable")  # pragma: no cover
