"""
Clocks driving the scheduler ticker.

This module provides:
- Clock: wall/monotonic time and asyncio sleeps
- VirtualClock: manually advanced time for deterministic tests
"""

import asyncio
import heapq
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional


class Clock:
    """Real time source."""

    def time(self) -> float:
        """Monotonic seconds, used for due times and intervals."""
        return time.monotonic()

    def now(self) -> datetime:
        """Current aware UTC datetime, used for timestamps."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


class VirtualClock(Clock):
    """
    Clock whose time only moves when advanced.

    Sleepers are woken in deadline order by advance(). With auto_advance,
    every sleep moves time forward immediately and returns.
    """

    def __init__(
        self,
        start: float = 0.0,
        epoch: Optional[datetime] = None,
        auto_advance: bool = False,
        settle_rounds: int = 20,
    ):
        self._now = start
        self.epoch = epoch or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.auto_advance = auto_advance
        self.settle_rounds = settle_rounds
        self.sleeps: List[float] = []
        self._waiters = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._now

    def now(self) -> datetime:
        return self.epoch + timedelta(seconds=self._now)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, future in self._waiters if not future.done())

    async def sleep(self, seconds: float) -> None:
        seconds = max(seconds, 0.0)
        self.sleeps.append(seconds)

        if self.auto_advance or seconds == 0:
            self._now += seconds
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self._now + seconds, next(self._counter), future))
        await future

    async def settle(self) -> None:
        """Let woken tasks run until they block again."""
        for _ in range(self.settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """
        Move time forward, waking every sleeper whose deadline passes.

        Args:
            seconds: Amount of virtual time to move
        """
        deadline = self._now + seconds
        await self.settle()

        while self._waiters and self._waiters[0][0] <= deadline:
            wake_at, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self._now = max(self._now, wake_at)
            future.set_result(None)
            await self.settle()

        self._now = deadline
        await self.settle()
