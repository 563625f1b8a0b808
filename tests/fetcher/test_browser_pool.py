"""
Test cases for the browser pool.
"""

import asyncio

import pytest

from fetcher.browser_pool import STEALTH_SCRIPT, BrowserPool


class TestBrowserPool:
    """Test cases for BrowserPool."""

    @pytest.fixture
    def pool(self, fake_launcher, logger):
        return BrowserPool(size=2, user_agent="TestAgent/1.0", launcher=fake_launcher, logger=logger)

    @pytest.mark.asyncio
    async def test_sessions_reuse_browser(self, pool, fake_launcher):
        async with pool.session():
            assert pool.open_sessions == 1
        async with pool.session():
            pass

        assert len(fake_launcher.browsers) == 1
        assert pool.browser_count == 1
        assert all(context.closed for context in fake_launcher.contexts)
        assert pool.open_sessions == 0

    @pytest.mark.asyncio
    async def test_stealth_session_options(self, pool, fake_launcher):
        async with pool.session(stealth=True) as context:
            assert context.options["user_agent"] == "TestAgent/1.0"
            assert context.options["timezone_id"] == "Asia/Tokyo"
            assert context.init_scripts == [STEALTH_SCRIPT]

    @pytest.mark.asyncio
    async def test_concurrent_sessions_are_bounded(self, fake_launcher, logger):
        pool = BrowserPool(size=2, launcher=fake_launcher, logger=logger)
        release = asyncio.Event()
        peak = []

        async def use():
            async with pool.session():
                peak.append(pool.open_sessions)
                await release.wait()

        tasks = [asyncio.create_task(use()) for _ in range(4)]
        await asyncio.sleep(0.01)
        assert pool.open_sessions == 2
        release.set()
        await asyncio.gather(*tasks)

        assert max(peak) == 2
        assert pool.open_sessions == 0
        assert len(fake_launcher.browsers) <= 2

    @pytest.mark.asyncio
    async def test_error_inside_session_closes_context(self, pool, fake_launcher):
        with pytest.raises(RuntimeError):
            async with pool.session():
                raise RuntimeError("page crashed")

        assert fake_launcher.contexts[0].closed is True
        assert pool.open_sessions == 0

    @pytest.mark.asyncio
    async def test_cancellation_inside_session_closes_context(self, pool, fake_launcher):
        entered = asyncio.Event()

        async def use():
            async with pool.session():
                entered.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(use())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_launcher.contexts[0].closed is True
        assert pool.open_sessions == 0

    @pytest.mark.asyncio
    async def test_disconnected_browser_is_replaced(self, pool, fake_launcher):
        async with pool.session():
            pass
        fake_launcher.browsers[0].connected = False

        async with pool.session():
            pass

        assert len(fake_launcher.browsers) == 2
        assert pool.browser_count == 1

    @pytest.mark.asyncio
    async def test_close(self, pool, fake_launcher):
        async with pool.session():
            pass
        await pool.close()

        assert fake_launcher.browsers[0].closed is True
        assert fake_launcher.stopped is True
        assert pool.browser_count == 0
        with pytest.raises(RuntimeError):
            async with pool.session():
                pass

    def test_invalid_size(self, fake_launcher):
        with pytest.raises(ValueError):
            BrowserPool(size=0, launcher=fake_launcher)
