"""tests for the timer schedulers."""

import asyncio

import pytest

from iteration_canvas.core.scheduler import AsyncioScheduler, ManualScheduler


class TestAsyncioScheduler:
    """tests for AsyncioScheduler."""

    @pytest.mark.asyncio
    async def test_one_shot_marked_spent(self):
        scheduler = AsyncioScheduler()
        calls = []
        timer = scheduler.call_later(0, lambda: calls.append(1))
        assert not timer.cancelled
        await asyncio.sleep(0.05)
        assert calls == [1]
        assert timer.cancelled

    @pytest.mark.asyncio
    async def test_repeating_stays_live(self):
        scheduler = AsyncioScheduler()
        calls = []
        timer = scheduler.call_every(0.01, lambda: calls.append(1))
        await asyncio.sleep(0.05)
        assert calls
        assert not timer.cancelled
        timer.cancel()
        assert timer.cancelled


class TestManualScheduler:
    """tests for ManualScheduler."""

    @pytest.mark.asyncio
    async def test_one_shot_marked_spent(self):
        scheduler = ManualScheduler()
        calls = []
        timer = scheduler.call_later(1, lambda: calls.append(1))
        await scheduler.advance(1)
        assert calls == [1]
        assert timer.cancelled
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_repeating_fires_each_interval(self):
        scheduler = ManualScheduler()
        calls = []
        timer = scheduler.call_every(2, lambda: calls.append(scheduler.now()))
        await scheduler.advance(5)
        assert calls == [2, 4]
        assert not timer.cancelled
        assert scheduler.pending == 1
