"""timer scheduling for polling and generation follow-ups.

components never touch the event loop's timers directly; they get a
Scheduler so tests can drive time with ManualScheduler.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .logger import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Any]  # may return an awaitable


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        ...


@runtime_checkable
class Scheduler(Protocol):
    """cancellable one-shot and repeating timers."""

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        ...

    def now(self) -> float:
        ...


class _AsyncioTimer:
    """one-shot or repeating timer on the running event loop."""

    def __init__(self, scheduler: AsyncioScheduler, delay: float, callback: Callback, interval: Optional[float]):
        self._scheduler = scheduler
        self._callback = callback
        self._interval = interval
        self._cancelled = False
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        if self._interval is not None:
            self._handle = asyncio.get_running_loop().call_later(self._interval, self._fire)
        else:
            # a fired one-shot timer is spent
            self._cancelled = True
        self._scheduler._run(self._callback)

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """scheduler backed by the running asyncio loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        return _AsyncioTimer(self, delay, callback, None)

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        return _AsyncioTimer(self, interval, callback, interval)

    def now(self) -> float:
        return time.monotonic()

    def _run(self, callback: Callback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("timer callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("timer task failed", exc_info=task.exception())

    def cancel_all(self) -> None:
        """cancel in-flight callback tasks (teardown)."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class _ManualTimer:
    def __init__(self, due: float, seq: int, callback: Callback, interval: Optional[float]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """fake clock: timers only fire when advance() is awaited."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = 0
        self._timers: list[_ManualTimer] = []

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        return self._add(delay, callback, None)

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        return self._add(interval, callback, interval)

    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        """number of live timers."""
        return sum(1 for t in self._timers if not t.cancelled)

    def _add(self, delay: float, callback: Callback, interval: Optional[float]) -> _ManualTimer:
        self._seq += 1
        timer = _ManualTimer(self._now + max(delay, 0.0), self._seq, callback, interval)
        self._timers.append(timer)
        return timer

    async def advance(self, seconds: float) -> None:
        """move the clock forward, firing due timers in order and awaiting them."""
        target = self._now + seconds
        while True:
            self._timers = [t for t in self._timers if not t.cancelled]
            due = [t for t in self._timers if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._now = max(self._now, timer.due)
            if timer.interval is not None:
                self._seq += 1
                timer.due += timer.interval
                timer.seq = self._seq
            else:
                self._timers.remove(timer)
                timer.cancel()
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target

    async def run_pending(self) -> None:
        """fire timers due now."""
        await self.advance(0)
