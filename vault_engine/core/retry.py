"""Retry with exponential backoff for async operations."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from vault_engine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    initial_delay: float,
    multiplier: float = 2.0,
    max_delay: float | None = None,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    delay = initial_delay * (multiplier**attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter * delay)
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    initial_delay: float,
    multiplier: float = 2.0,
    max_delay: float | None = None,
    jitter: float = 0.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. The last retryable exception is re-raised once the budget
    is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first (>= 1)
        initial_delay: Delay after the first failure, in seconds
        multiplier: Exponential growth factor per attempt
        max_delay: Optional delay ceiling
        jitter: Fraction of the delay added at random
        retry_on: Exception types that trigger a retry
        label: Name used in log lines

    Returns:
        The operation's result
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.error(f"{label}: all {attempts} attempts failed: {e}")
                raise
            delay = backoff_delay(attempt, initial_delay, multiplier, max_delay, jitter)
            logger.warning(f"{label}: attempt {attempt + 1} failed: {e}. Retry in {delay:.2f}s")
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
