"""Deadlines and bounded retries for chain calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from swapresolver.errors import ChainQueryError
from swapresolver.utils.clock import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for a zero-based retry attempt."""
    return min(base_delay * (2 ** attempt), max_delay)


async def with_deadline(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with a deadline; a timeout surfaces as ChainQueryError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise ChainQueryError(f"{operation} timed out after {timeout}s")


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    operation: str,
    attempts: int = 3,
    timeout: float = 30.0,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    clock: Optional[Clock] = None,
) -> T:
    """Run a chain call with a per-attempt deadline and exponential backoff.

    Only retryable errors (ChainQueryError) are retried; policy and
    validation errors propagate immediately.

    Raises:
        ChainQueryError: After the last attempt fails
    """
    clock = clock or Clock()
    last_error: Optional[ChainQueryError] = None

    for attempt in range(max(attempts, 1)):
        try:
            return await with_deadline(func(), timeout, operation)
        except ChainQueryError as e:
            last_error = e
            if attempt + 1 >= attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{attempts}): {e}; retrying in {delay}s"
            )
            await clock.sleep(delay)

    raise ChainQueryError(f"{operation} failed after {attempts} attempts: {last_error}")
