"""
Scheduler Abstraction

The poll controller never touches timers directly. It asks a Scheduler for
the current time and to run a coroutine later, so production uses the
asyncio loop and tests drive virtual time.
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set, Tuple

Callback = Callable[[], Awaitable[None]]


class Handle(ABC):
    """Cancellable scheduled call"""

    @abstractmethod
    def cancel(self) -> None:
        """Prevent the call from running if it has not started yet"""
        pass


class Scheduler(ABC):
    """Clock plus delayed coroutine execution"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware time"""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> Handle:
        """
        Run ``callback()`` after ``delay`` seconds.

        Args:
            delay: Seconds from now
            callback: Zero-argument coroutine function

        Returns:
            Handle that cancels the call
        """
        pass


class _TimerHandle(Handle):
    def __init__(self, timer: asyncio.TimerHandle):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop"""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callback) -> Handle:
        loop = self._loop or asyncio.get_running_loop()

        def fire() -> None:
            task = loop.create_task(callback())
            # Keep a strong reference until the task finishes
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return _TimerHandle(loop.call_later(max(delay, 0.0), fire))


class _VirtualHandle(Handle):
    def __init__(self, due: datetime, callback: Callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler over virtual time.

    Example:
        scheduler = VirtualScheduler(datetime(2025, 11, 26, tzinfo=timezone.utc))
        controller = RecalculationController(scheduler)
        await scheduler.advance(300)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime.now(timezone.utc)
        self._queue: List[Tuple[datetime, int, _VirtualHandle]] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> Handle:
        handle = _VirtualHandle(self._now + timedelta(seconds=max(delay, 0.0)), callback)
        heapq.heappush(self._queue, (handle.due, next(self._sequence), handle))
        return handle

    @property
    def pending_calls(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move time forward, awaiting every call that falls due on the way"""
        target = self._now + timedelta(seconds=seconds)

        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            await handle.callback()

        # A callback may itself have advanced the clock further
        self._now = max(self._now, target)
