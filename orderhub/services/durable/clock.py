"""
Clocks for the durable runtime.

Workflow timers are always scheduled through a clock, never with
asyncio.sleep directly, so tests can swap in a VirtualClock and drive days
of escalation in microseconds.
"""

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple


class SystemClock:
    """Wall-clock time on the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_at(self, when: datetime, callback: Callable[[], None]):
        delay = max(0.0, (when - self.now()).total_seconds())
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class _VirtualTimer:
    def __init__(self, when: datetime, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualClock:
    """
    Manually advanced clock.

    `advance(delta)` fires every timer due within the window in deadline
    order, letting the runtime settle after each one so timers scheduled in
    reaction (the next escalation phase, say) are seen in the same call.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self._timers: List[Tuple[datetime, int, _VirtualTimer]] = []
        self._counter = itertools.count()
        self._idle_waiter: Optional[Callable[[], Awaitable[None]]] = None

    def now(self) -> datetime:
        return self._now

    def set_idle_waiter(self, waiter: Callable[[], Awaitable[None]]) -> None:
        self._idle_waiter = waiter

    def call_at(self, when: datetime, callback: Callable[[], None]) -> _VirtualTimer:
        timer = _VirtualTimer(when, callback)
        if when <= self._now:
            asyncio.get_running_loop().call_soon(self._fire, timer)
        else:
            heapq.heappush(self._timers, (when, next(self._counter), timer))
        return timer

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self.call_at(self._now + timedelta(seconds=seconds), lambda: future.done() or future.set_result(None))
        await future

    def pending_timers(self) -> int:
        return sum(1 for _, _, t in self._timers if not t.cancelled)

    async def advance(self, delta: timedelta) -> None:
        target = self._now + delta
        await self._settle()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            self._fire(timer)
            await self._settle()
        self._now = target
        await self._settle()

    @staticmethod
    def _fire(timer: _VirtualTimer) -> None:
        if not timer.cancelled:
            timer.cancelled = True
            timer.callback()

    async def _settle(self) -> None:
        if self._idle_waiter is not None:
            await self._idle_waiter()
        else:
            for _ in range(20):
                await asyncio.sleep(0)
