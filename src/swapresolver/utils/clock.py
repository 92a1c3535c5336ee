"""Time source used by the orchestrator and simulated chains.

Timelock decisions compare against ``Clock.now()``; waits go through
``Clock.sleep()`` so tests can move time forward without real delays.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))

    async def sleep_until(self, moment: datetime) -> None:
        """Sleep until an absolute time (no-op if already past)."""
        await self.sleep((moment - self.now()).total_seconds())


class ManualClock(Clock):
    """Clock that only advances when told to, or when slept on.

    Sleeping advances the clock by the requested amount and yields once to
    the event loop, so scheduled waits complete immediately in tests.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)
