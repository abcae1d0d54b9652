"""
Deferred callback scheduling for the signer session.

The session never sleeps. Anything that must happen "later" (grace-period
removal of finished requests, the deferred queue clear after a signer is
unset) goes through a ``Scheduler`` so production code can use the asyncio
loop while tests drive a virtual clock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...

    def cancelled(self) -> bool:
        ...


@runtime_checkable
class Scheduler(Protocol):
    """
    Protocol for deferring work onto the single control thread.

    Callbacks scheduled with ``call_soon`` run after the current call stack
    unwinds, in FIFO order. Callbacks scheduled with ``call_later`` run once
    ``delay`` seconds have elapsed, ordered by due time then submission order.
    """

    def call_soon(self, callback: Callable[[], None]) -> TimerHandle:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class LoopScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            return asyncio.get_running_loop()
        return self._loop

    def call_soon(self, callback: Callable[[], None]) -> asyncio.Handle:
        return self.loop.call_soon(callback)

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)


class ManualTimer:
    """Handle returned by ``ManualScheduler``."""

    __slots__ = ("when", "callback", "_cancelled")

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """
    Virtual-clock scheduler.

    Nothing runs until ``advance`` is called. ``advance(0)`` is one scheduling
    turn: it runs everything queued with ``call_soon`` plus any timer already
    due. Callbacks scheduled while advancing run in the same pass if they fall
    inside the advanced window.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, ManualTimer]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._now

    def call_soon(self, callback: Callable[[], None]) -> ManualTimer:
        return self._push(self._now, callback)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        return self._push(self._now + max(delay, 0.0), callback)

    def _push(self, when: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(when, callback)
        heapq.heappush(self._queue, (when, next(self._counter), timer))
        return timer

    def pending(self) -> int:
        """Number of scheduled callbacks that have not run or been cancelled."""
        return sum(1 for _, _, timer in self._queue if not timer.cancelled())

    def advance(self, seconds: float = 0.0) -> int:
        """
        Move the clock forward and run every callback that becomes due.

        Args:
            seconds: How far to move the virtual clock

        Returns:
            Number of callbacks executed
        """
        deadline = self._now + seconds
        executed = 0
        while self._queue and self._queue[0][0] <= deadline:
            when, _, timer = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if timer.cancelled():
                continue
            timer.callback()
            executed += 1
        self._now = deadline
        return executed
