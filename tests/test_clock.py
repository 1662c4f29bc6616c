"""Unit tests for the clock and timer service"""
import asyncio
from datetime import timedelta

import pytest

from staysync.clock import LoopClock, VirtualClock


class TestVirtualClock:
    """Tests for VirtualClock"""

    @pytest.mark.asyncio
    async def test_call_later_fires_when_due(self, clock):
        """Test one-shot timers fire only once their delay has elapsed"""
        fired = []
        clock.call_later(10, fired.append, "a")

        await clock.advance(9)
        assert fired == []

        await clock.advance(1)
        assert fired == ["a"]
        assert clock.pending_count() == 0

    @pytest.mark.asyncio
    async def test_timers_fire_in_time_order(self, clock):
        """Test due timers run in order and see their own firing time"""
        seen = []
        start = clock.now()
        clock.call_later(5, lambda: seen.append(("b", clock.now() - start)))
        clock.call_later(2, lambda: seen.append(("a", clock.now() - start)))

        await clock.advance(10)

        assert seen == [("a", timedelta(seconds=2)), ("b", timedelta(seconds=5))]
        assert clock.now() - start == timedelta(seconds=10)

    @pytest.mark.asyncio
    async def test_call_every_repeats_until_cancelled(self, clock):
        """Test periodic timers keep firing until cancelled"""
        ticks = []
        handle = clock.call_every(1, lambda: ticks.append(clock.now()))

        await clock.advance(3)
        assert len(ticks) == 3

        handle.cancel()
        await clock.advance(3)
        assert len(ticks) == 3
        assert handle.cancelled

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self, clock):
        """Test cancelling before the due time"""
        fired = []
        handle = clock.call_later(1, fired.append, 1)
        handle.cancel()

        await clock.advance(5)

        assert fired == []
        assert clock.pending_count() == 0

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_are_awaited(self, clock):
        """Test async callbacks settle within advance"""
        done = []

        async def work():
            await asyncio.sleep(0)
            done.append(True)

        clock.call_later(1, work)
        await clock.advance(1)

        assert done == [True]

    @pytest.mark.asyncio
    async def test_callbacks_can_schedule_more_timers(self, clock):
        """Test timers scheduled by a callback fire in the same advance"""
        order = []

        def first():
            order.append("first")
            clock.call_later(0, order.append, "second")

        clock.call_later(1, first)
        await clock.advance(1)

        assert order == ["first", "second"]

    def test_interval_must_be_positive(self, clock):
        """Test invalid periodic interval"""
        with pytest.raises(ValueError):
            clock.call_every(0, lambda: None)


class TestLoopClock:
    """Tests for LoopClock"""

    @pytest.mark.asyncio
    async def test_call_later_runs_on_the_loop(self):
        """Test wall-clock timers fire through the running loop"""
        clock = LoopClock()
        fired = asyncio.Event()
        clock.call_later(0.01, fired.set)

        await asyncio.wait_for(fired.wait(), timeout=1)
        assert clock.pending_count() == 0

    @pytest.mark.asyncio
    async def test_periodic_and_async_callbacks(self):
        """Test periodic coroutine callbacks run as tasks"""
        clock = LoopClock()
        ticks = []

        async def tick():
            ticks.append(clock.now())

        handle = clock.call_every(0.01, tick)
        await asyncio.sleep(0.08)
        handle.cancel()
        await asyncio.sleep(0)
        count = len(ticks)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(ticks) == count
        assert clock.pending_count() == 0

    def test_now_is_timezone_aware(self):
        """Test wall-clock time is UTC"""
        assert LoopClock().now().utcoffset() == timedelta(0)
