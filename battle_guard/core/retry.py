"""
Bounded retry with exponential backoff for async operations.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up.

    The delay doubles after each failure, capped at ``max_delay``. The last
    exception is re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Total number of tries (>= 1)
        base_delay: Delay before the second try, in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types that trigger another try
        description: Label used in log messages

    Returns:
        The operation's result

    Raises:
        ValueError: If attempts < 1
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, e)
                raise
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description, attempt, attempts, delay, e
            )
            if delay > 0:
                await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")
