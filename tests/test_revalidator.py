"""
Tests for periodic background revalidation.
"""
import asyncio

import pytest

from storefront.cache import BackgroundRevalidator, CacheConfig, NetworkError, SWREngine
from tests.conftest import ScriptedRemote


def make_engine(clock):
    config = CacheConfig(stale_time=100, cache_time=1000, retry_count=0, background_refetch_interval=500)
    return SWREngine("products", config, clock=clock)


class TestSweep:
    """Tests for a single revalidation pass."""

    @pytest.mark.asyncio
    async def test_refreshes_stale_subscribed_keys(self, clock):
        engine = make_engine(clock)
        remote = ScriptedRemote("v1", "v2")
        await engine.fetch("k", remote)
        received = []
        engine.subscribe("k", received.append)
        clock.advance(150)

        refreshed = await BackgroundRevalidator(engine).sweep()

        assert refreshed == 1
        assert remote.calls == 2
        # Silent: no "validating" update, only the settled value
        assert [(u.data, u.is_validating) for u in received] == [("v2", False)]

    @pytest.mark.asyncio
    async def test_skips_keys_without_subscribers(self, clock):
        engine = make_engine(clock)
        remote = ScriptedRemote("v1", "v2")
        await engine.fetch("k", remote)
        clock.advance(150)

        assert await BackgroundRevalidator(engine).sweep() == 0
        assert remote.calls == 1

    @pytest.mark.asyncio
    async def test_skips_fresh_keys(self, clock):
        engine = make_engine(clock)
        remote = ScriptedRemote("v1", "v2")
        await engine.fetch("k", remote)
        engine.subscribe("k", lambda u: None)

        assert await BackgroundRevalidator(engine).sweep() == 0

    @pytest.mark.asyncio
    async def test_refetches_expired_subscribed_key(self, clock):
        engine = make_engine(clock)
        remote = ScriptedRemote("v1", "v2")
        await engine.fetch("k", remote)
        engine.subscribe("k", lambda u: None)
        clock.advance(5000)

        assert BackgroundRevalidator(engine).due_keys() == ["k"]

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self, clock):
        engine = make_engine(clock)
        engine.register("k", ScriptedRemote(NetworkError("down")))
        engine.subscribe("k", lambda u: None)
        revalidator = BackgroundRevalidator(engine)

        assert await revalidator.sweep() == 0
        assert revalidator.get_stats()["failures"] == 1


class TestTimer:
    """Tests for start / stop / re-arm."""

    @pytest.mark.asyncio
    async def test_loop_sweeps_after_each_interval(self, clock):
        engine = make_engine(clock)
        remote = ScriptedRemote("v1", "v2")
        await engine.fetch("k", remote)
        engine.subscribe("k", lambda u: None)
        clock.advance(150)

        ticks = []
        proceed = asyncio.Event()

        async def fake_sleep(seconds):
            ticks.append(seconds)
            if len(ticks) > 1:
                proceed.set()
                await asyncio.Event().wait()

        revalidator = BackgroundRevalidator(engine, sleep=fake_sleep)
        revalidator.start()
        await asyncio.wait_for(proceed.wait(), timeout=1)

        assert ticks[0] == 0.5
        assert remote.calls == 2
        await revalidator.stop()
        assert not revalidator.running

    @pytest.mark.asyncio
    async def test_restart_replaces_previous_timer(self, clock):
        engine = make_engine(clock)

        async def forever(seconds):
            await asyncio.Event().wait()

        revalidator = BackgroundRevalidator(engine, sleep=forever)
        revalidator.start()
        first = revalidator._task
        revalidator.start()
        await asyncio.sleep(0)

        assert first.cancelled()
        assert revalidator.running
        await revalidator.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, clock):
        revalidator = BackgroundRevalidator(make_engine(clock))

        await revalidator.stop()

        assert not revalidator.running
