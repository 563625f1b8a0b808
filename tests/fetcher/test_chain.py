"""
Test cases for the escalating fetch chain.
"""

import asyncio

import pytest

from fetcher.browser_pool import BrowserPool
from fetcher.chain import FetchStrategyChain
from fetcher.errors import (
    BotDetectedError,
    ErrorClassification,
    ExtractionError,
    FatalConfigError,
    FetchTimeoutError,
    NetworkError,
)
from fetcher.hashing import ContentHasher
from fetcher.models import FetchMethod, ScrapeOutcome
from fetcher.retry import RetryPolicy
from fetcher.strategies import FetchStrategy
from monitor.models import MonitoredTarget
from utilities.config import MonitorSettings


class ScriptedStrategy(FetchStrategy):
    """Returns or raises the scripted values in order; the last one repeats."""

    def __init__(self, method, results):
        self.method = method
        self.results = list(results)
        self.calls = 0
        self.closed = False

    async def fetch_content(self, target):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        self.closed = True


class TimingOutStrategy(FetchStrategy):
    """Waits out its request timeout on every call, then fails with a timeout."""

    def __init__(self, method, timeout):
        self.method = method
        self.timeout = timeout
        self.calls = 0

    async def fetch_content(self, target):
        self.calls += 1
        await asyncio.sleep(self.timeout)
        raise FetchTimeoutError("request timed out")


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestFetchStrategyChain:
    """Test cases for FetchStrategyChain."""

    @pytest.fixture
    def target(self):
        return MonitoredTarget.from_url("https://listings.example.com/search", selector="#item-list li")

    @pytest.fixture
    def sleep(self):
        return SleepRecorder()

    def _chain(self, strategies, sleep, logger, **kwargs):
        return FetchStrategyChain(
            strategies,
            retry_policy=RetryPolicy(max_retries=2, base_delay=1.0, logger=logger),
            sleep=sleep,
            logger=logger,
            **kwargs
        )

    @pytest.mark.asyncio
    async def test_http_success(self, target, sleep, logger, listing_page):
        http = ScriptedStrategy(FetchMethod.HTTP, [listing_page("A", "B")])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [listing_page("A")])
        chain = self._chain([http, dom], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.success is True
        assert outcome.method == FetchMethod.HTTP
        assert outcome.fingerprint == ContentHasher.hash_items(["A", "B"])
        assert outcome.item_count == 2
        assert outcome.attempts == 1
        assert outcome.memory_mb is not None
        assert dom.calls == 0

    @pytest.mark.asyncio
    async def test_escalates_in_order(self, target, sleep, logger, listing_page):
        http = ScriptedStrategy(FetchMethod.HTTP, [BotDetectedError("blocked")])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [BotDetectedError("still blocked")])
        browser = ScriptedStrategy(FetchMethod.BROWSER_FALLBACK, [listing_page("A")])
        chain = self._chain([http, dom, browser], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.success is True
        assert outcome.method == FetchMethod.BROWSER_FALLBACK
        assert (http.calls, dom.calls, browser.calls) == (1, 1, 1)
        assert outcome.attempts == 3
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_recoverable_errors_before_escalating(self, target, sleep, logger, listing_page):
        http = ScriptedStrategy(FetchMethod.HTTP, [NetworkError("reset")])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [listing_page("A")])
        chain = self._chain([http, dom], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.method == FetchMethod.DOM_FALLBACK
        assert http.calls == 3
        assert sleep.delays == [1.0, 2.0]
        assert outcome.attempts == 4

    @pytest.mark.asyncio
    async def test_recovers_within_strategy(self, target, sleep, logger, listing_page):
        http = ScriptedStrategy(FetchMethod.HTTP, [FetchTimeoutError("slow"), listing_page("A")])
        chain = self._chain([http], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.success is True
        assert outcome.method == FetchMethod.HTTP
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_extraction_failure_escalates(self, target, sleep, logger, listing_page):
        # Static markup without the rendered list
        http = ScriptedStrategy(FetchMethod.HTTP, ["<html><body><div id='app'></div></body></html>"])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [listing_page("Rendered")])
        chain = self._chain([http, dom], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.method == FetchMethod.DOM_FALLBACK
        assert outcome.fingerprint == ContentHasher.hash_items(["Rendered"])

    @pytest.mark.asyncio
    async def test_all_strategies_fail(self, target, sleep, logger):
        http = ScriptedStrategy(FetchMethod.HTTP, [BotDetectedError("blocked")])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [ExtractionError("empty")])
        browser = ScriptedStrategy(FetchMethod.BROWSER_FALLBACK, [BotDetectedError("captcha")])
        chain = self._chain([http, dom, browser], sleep, logger)

        outcome = await chain.fetch(target)

        assert outcome.success is False
        assert outcome.fingerprint is None
        assert outcome.method == FetchMethod.BROWSER_FALLBACK
        assert outcome.error == ErrorClassification.BOT_DETECTED
        assert outcome.error_message == "captcha"
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_invalid_selector_propagates(self, sleep, logger, listing_page):
        target = MonitoredTarget.from_url("https://listings.example.com/search", selector="li[")
        http = ScriptedStrategy(FetchMethod.HTTP, [listing_page("A")])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [listing_page("A")])
        chain = self._chain([http, dom], sleep, logger)

        with pytest.raises(FatalConfigError):
            await chain.fetch(target)
        assert dom.calls == 0

    def test_requires_strategies(self, logger):
        with pytest.raises(ValueError):
            FetchStrategyChain([], logger=logger)

    def test_validate_performance(self, sleep, logger):
        chain = self._chain([ScriptedStrategy(FetchMethod.HTTP, ["x"])], sleep, logger)
        fast = ScrapeOutcome(method=FetchMethod.HTTP, success=True, fingerprint="f", elapsed_seconds=0.5, memory_mb=50)
        slow = fast.model_copy(update={"elapsed_seconds": 6.0})
        heavy = fast.model_copy(update={"memory_mb": 500.0})

        assert chain.validate_performance("https://example.com", fast) is True
        assert chain.validate_performance("https://example.com", slow) is False
        assert chain.validate_performance("https://example.com", heavy) is False

    @pytest.mark.asyncio
    async def test_close_releases_strategies_and_pool(self, sleep, logger, fake_launcher):
        pool = BrowserPool(size=1, launcher=fake_launcher, logger=logger)
        http = ScriptedStrategy(FetchMethod.HTTP, ["x"])
        chain = self._chain([http], sleep, logger, pool=pool)

        await chain.close()

        assert http.closed is True
        assert fake_launcher.stopped is True

    def test_from_settings(self, logger):
        settings = MonitorSettings(_env_file=None, max_retries=1, browser_pool_size=1)
        chain = FetchStrategyChain.from_settings(settings, logger=logger)
        assert chain.methods == [FetchMethod.HTTP, FetchMethod.DOM_FALLBACK, FetchMethod.BROWSER_FALLBACK]
        assert chain.retry_policy.max_retries == 1
        assert chain.pool is not None

    def test_from_settings_http_only(self, logger):
        settings = MonitorSettings(_env_file=None, enable_dom_fallback=False, enable_browser_fallback=False)
        chain = FetchStrategyChain.from_settings(settings, logger=logger)
        assert chain.methods == [FetchMethod.HTTP]
        assert chain.pool is None

    def test_default_time_slices_give_each_strategy_one_attempt(self, logger):
        settings = MonitorSettings(_env_file=None)
        chain = FetchStrategyChain.from_settings(settings, logger=logger)
        timeouts = [strategy.timeout for strategy in chain.strategies]
        assert timeouts == settings.strategy_timeouts()

        # Worst case for HTTP alone outlasts its slice, so the slice must cut it short
        retries = settings.max_retries
        http_worst_case = (retries + 1) * timeouts[0] + sum(
            chain.retry_policy.next_delay(attempt) for attempt in range(retries)
        )
        remaining = chain.time_budget
        slices = []
        for index in range(len(chain.strategies)):
            slices.append(chain.time_slice(index, remaining))
            remaining -= slices[-1]

        assert http_worst_case > slices[0]
        assert all(time_slice >= timeout for time_slice, timeout in zip(slices, timeouts))
        assert sum(slices) <= settings.check_timeout_seconds

    def test_unused_time_rolls_over_to_later_strategies(self, sleep, logger):
        http = ScriptedStrategy(FetchMethod.HTTP, ["x"])
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, ["x"])
        http.timeout, dom.timeout = 1.0, 3.0
        chain = self._chain([http, dom], sleep, logger, time_budget=8.0)

        assert chain.time_slice(0, 8.0) == pytest.approx(2.0)
        assert chain.time_slice(1, 7.5) == pytest.approx(7.5)

    @pytest.mark.asyncio
    async def test_repeated_timeouts_escalate_within_the_check_timeout(self, target, logger, listing_page):
        """Default settings scaled down 100x: HTTP keeps timing out, DOM still gets its turn."""
        settings = MonitorSettings(_env_file=None)
        scale = 0.01
        http = TimingOutStrategy(FetchMethod.HTTP, settings.request_timeout * scale)
        dom = ScriptedStrategy(FetchMethod.DOM_FALLBACK, [listing_page("A", "B")])
        dom.timeout = settings.request_timeout * scale
        browser = ScriptedStrategy(FetchMethod.BROWSER_FALLBACK, [listing_page("A", "B")])
        browser.timeout = settings.request_timeout * 2 * scale
        chain = FetchStrategyChain(
            [http, dom, browser],
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay * scale,
                max_delay=settings.retry_max_delay * scale,
                backoff_multiplier=settings.retry_backoff_multiplier,
                logger=logger,
            ),
            time_budget=settings.chain_time_budget() * scale,
            logger=logger,
        )
        reached = []

        outcome = await asyncio.wait_for(
            chain.fetch(target, on_strategy=reached.append),
            timeout=settings.check_timeout_seconds * scale,
        )

        assert outcome.success is True
        assert outcome.method == FetchMethod.DOM_FALLBACK
        assert reached == [FetchMethod.HTTP, FetchMethod.DOM_FALLBACK]
        assert 1 <= http.calls < settings.max_retries + 1
        assert dom.calls == 1
        assert browser.calls == 0

    @pytest.mark.asyncio
    async def test_every_strategy_timing_out_fails_as_timeout(self, target, logger):
        http = TimingOutStrategy(FetchMethod.HTTP, 0.05)
        dom = TimingOutStrategy(FetchMethod.DOM_FALLBACK, 0.05)
        chain = FetchStrategyChain(
            [http, dom],
            retry_policy=RetryPolicy(max_retries=5, base_delay=0.01, logger=logger),
            time_budget=0.3,
            logger=logger,
        )

        outcome = await chain.fetch(target)

        assert outcome.success is False
        assert outcome.error == ErrorClassification.TIMEOUT
        assert outcome.method == FetchMethod.DOM_FALLBACK
        assert dom.calls >= 1
