"""Clock and timer service.

Every component schedules its countdowns, renewals and retries through a
``Clock`` so that tests can swap in ``VirtualClock`` and fast-forward time
instead of sleeping.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled one-shot or periodic callback."""

    def __init__(
        self,
        clock: "Clock",
        when: datetime,
        callback: Callable[..., Any],
        args: tuple,
        interval: Optional[float] = None,
    ):
        self._clock = clock
        self.when = when
        self.callback = callback
        self.args = args
        self.interval = interval
        self._cancelled = False
        self._native = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._clock._cancel(self)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "pending"
        return f"<TimerHandle {getattr(self.callback, '__qualname__', self.callback)} at {self.when.isoformat()} {state}>"


class Clock(ABC):
    """Time source plus callback scheduler."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[..., Any], *args) -> TimerHandle:
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled."""

    @abstractmethod
    def _cancel(self, handle: TimerHandle) -> None:
        pass


class LoopClock(Clock):
    """Wall-clock scheduler backed by the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: Set[TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args) -> TimerHandle:
        handle = TimerHandle(self, self.now() + timedelta(seconds=delay), callback, args)
        self._arm(handle, delay)
        return handle

    def call_every(self, interval: float, callback: Callable[..., Any], *args) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(
            self, self.now() + timedelta(seconds=interval), callback, args, interval
        )
        self._arm(handle, interval)
        return handle

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        self._handles.add(handle)
        handle._native = self._get_loop().call_later(max(0.0, delay), self._fire, handle)

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        if handle.periodic:
            handle.when = self.now() + timedelta(seconds=handle.interval)
            handle._native = self._get_loop().call_later(handle.interval, self._fire, handle)
        else:
            self._handles.discard(handle)
        result = handle.callback(*handle.args)
        if inspect.isawaitable(result):
            task = self._get_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _cancel(self, handle: TimerHandle) -> None:
        self._handles.discard(handle)
        if handle._native is not None:
            handle._native.cancel()

    def pending_count(self) -> int:
        return len(self._handles)


class VirtualClock(Clock):
    """Deterministic clock for tests.

    Time only moves when ``advance`` is awaited. Due timers fire in time
    order; coroutine callbacks are awaited before the next timer fires, so a
    single ``advance`` call leaves every triggered side effect settled.
    """

    DEFAULT_START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or self.DEFAULT_START
        self._heap = []
        self._seq = itertools.count()
        self._active: Set[TimerHandle] = set()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args) -> TimerHandle:
        handle = TimerHandle(self, self._now + timedelta(seconds=max(0.0, delay)), callback, args)
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[..., Any], *args) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(
            self, self._now + timedelta(seconds=interval), callback, args, interval
        )
        self._push(handle)
        return handle

    def _push(self, handle: TimerHandle) -> None:
        self._active.add(handle)
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))

    def _cancel(self, handle: TimerHandle) -> None:
        self._active.discard(handle)

    def pending_count(self) -> int:
        return len(self._active)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due."""
        target = self._now + timedelta(seconds=seconds)
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            if handle.periodic:
                handle.when = when + timedelta(seconds=handle.interval)
                heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
            else:
                self._active.discard(handle)
            result = handle.callback(*handle.args)
            if inspect.isawaitable(result):
                await result
        if target > self._now:
            self._now = target
        # let tasks spawned by callbacks run up to their next suspension point
        await asyncio.sleep(0)

    async def advance_to(self, when: datetime) -> None:
        await self.advance(max(0.0, (when - self._now).total_seconds()))
