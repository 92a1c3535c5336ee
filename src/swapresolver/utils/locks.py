"""Per-order flow locks.

At most one flow (start, complete, recovery) may run for an order at a
time. A concurrent caller is rejected with FlowInProgressError, or waits
up to a timeout when one is given.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from swapresolver.errors import FlowInProgressError

logger = logging.getLogger(__name__)


class FlowLockRegistry:
    """Registry of asyncio locks keyed by order id."""

    def __init__(self, default_timeout: float = 0.0):
        self.default_timeout = default_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, str] = {}

    def get_lock(self, order_id: str) -> asyncio.Lock:
        """Get or create the lock for an order."""
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    def is_locked(self, order_id: str) -> bool:
        lock = self._locks.get(order_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        order_id: str,
        operation: str,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """Hold the order's lock for the duration of the block.

        Args:
            order_id: Order being processed
            operation: Description of the operation for logging
            timeout: Seconds to wait for a busy lock (0 = reject at once)

        Raises:
            FlowInProgressError: If the lock is busy past the timeout
        """
        timeout = self.default_timeout if timeout is None else timeout
        lock = self.get_lock(order_id)

        if lock.locked() and timeout <= 0:
            owner = self._owners.get(order_id, "unknown")
            logger.warning(f"Order {order_id}: {operation} rejected, {owner} in progress")
            raise FlowInProgressError(
                f"Order {order_id} is busy ({owner} in progress)", order_id=order_id
            )

        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout if timeout > 0 else None)
        except asyncio.TimeoutError:
            owner = self._owners.get(order_id, "unknown")
            logger.warning(f"Lock timeout for order {order_id} after {timeout}s: {operation}")
            raise FlowInProgressError(
                f"Order {order_id} is busy ({owner} in progress)", order_id=order_id
            )

        self._owners[order_id] = operation
        logger.debug(f"Lock acquired for order {order_id}: {operation}")
        try:
            yield
        finally:
            self._owners.pop(order_id, None)
            lock.release()
            logger.debug(f"Lock released for order {order_id}: {operation}")

    def clear(self) -> None:
        """Drop idle locks."""
        for order_id in [oid for oid, lock in self._locks.items() if not lock.locked()]:
            del self._locks[order_id]
