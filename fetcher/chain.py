"""
Escalating fetch chain.

This module provides:
- FetchStrategyChain running HTTP, DOM and browser strategies in order
- Per-strategy retry under a shared RetryPolicy
- Per-strategy time slices so a slow strategy still leaves time to escalate
- Conversion of exhausted failures into a failed ScrapeOutcome
- Soft performance checks on every outcome
"""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

import psutil
import structlog

from .browser_pool import BrowserPool
from .errors import ErrorClassification, FatalConfigError, FetchTimeoutError, ScrapingError
from .hashing import ContentHasher
from .models import FetchMethod, ScrapeOutcome
from .retry import RetryPolicy, RetryState
from .strategies import BrowserStrategy, DomStrategy, FetchStrategy, HttpStrategy

logger = structlog.get_logger(__name__)

ELAPSED_SOFT_LIMIT_SECONDS = 5.0
MEMORY_SOFT_LIMIT_MB = 200.0


def current_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return round(psutil.Process().memory_info().rss / (1024 * 1024), 2)


class FetchStrategyChain:
    """Runs strategies cheapest first and stops at the first usable fingerprint."""

    def __init__(
        self,
        strategies: List[FetchStrategy],
        retry_policy: Optional[RetryPolicy] = None,
        hasher: Optional[ContentHasher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pool: Optional[BrowserPool] = None,
        elapsed_soft_limit: float = ELAPSED_SOFT_LIMIT_SECONDS,
        memory_soft_limit_mb: float = MEMORY_SOFT_LIMIT_MB,
        time_budget: Optional[float] = None,
        logger=None,
    ):
        """
        Initialize the chain.

        Args:
            strategies: Strategies in escalation order
            retry_policy: Policy applied to each strategy separately
            hasher: Content hasher producing fingerprints
            sleep: Awaitable sleep used between retries
            pool: Browser pool closed together with the chain
            elapsed_soft_limit: Elapsed time above which a warning is logged
            memory_soft_limit_mb: Memory above which a warning is logged
            time_budget: Seconds one fetch may spend across all strategies,
                shared out in proportion to each strategy's attempt timeout;
                unlimited when None
            logger: structlog logger
        """
        if not strategies:
            raise ValueError("at least one strategy is required")
        self.strategies = strategies
        self.retry_policy = retry_policy or RetryPolicy()
        self.hasher = hasher or ContentHasher()
        self.sleep = sleep
        self.pool = pool
        self.elapsed_soft_limit = elapsed_soft_limit
        self.memory_soft_limit_mb = memory_soft_limit_mb
        self.time_budget = time_budget
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="fetch_chain")

    @classmethod
    def from_settings(cls, settings, sleep=asyncio.sleep, logger=None) -> "FetchStrategyChain":
        """Build the standard HTTP, DOM, browser chain from MonitorSettings."""
        strategies: List[FetchStrategy] = [
            HttpStrategy(
                timeout=settings.request_timeout,
                headers=settings.get_headers(),
                rate_limit_per_second=settings.rate_limit_per_second,
                logger=logger,
            )
        ]

        pool = None
        if settings.enable_dom_fallback or settings.enable_browser_fallback:
            pool = BrowserPool(
                size=settings.browser_pool_size,
                headless=settings.browser_headless,
                user_agent=settings.get_user_agent(),
                logger=logger,
            )
        if settings.enable_dom_fallback:
            strategies.append(DomStrategy(pool, timeout=settings.request_timeout, logger=logger))
        if settings.enable_browser_fallback:
            strategies.append(BrowserStrategy(pool, timeout=settings.request_timeout * 2, logger=logger))

        return cls(
            strategies,
            retry_policy=RetryPolicy.from_settings(settings, logger=logger),
            hasher=ContentHasher(),
            sleep=sleep,
            pool=pool,
            time_budget=settings.chain_time_budget(),
            logger=logger,
        )

    @property
    def methods(self) -> List[FetchMethod]:
        return [strategy.method for strategy in self.strategies]

    @staticmethod
    def _attempt_timeout(strategy: FetchStrategy) -> float:
        return float(getattr(strategy, "timeout", 1.0) or 1.0)

    def time_slice(self, index: int, remaining: float) -> float:
        """
        Share of the remaining budget for the strategy at `index`.

        Later strategies keep their proportional share, so time an earlier
        strategy did not use rolls over to them.
        """
        weights = [self._attempt_timeout(strategy) for strategy in self.strategies[index:]]
        return max(remaining, 0.0) * weights[0] / sum(weights)

    async def fetch(self, target, on_strategy: Optional[Callable[[FetchMethod], None]] = None) -> ScrapeOutcome:
        """
        Fetch and fingerprint a target, escalating on failure.

        Args:
            target: Object with `url` and optional `selector`
            on_strategy: Called with each strategy's method as it starts

        Returns:
            ScrapeOutcome of the first strategy that produced a fingerprint,
            or a failed outcome carrying the last classification

        Raises:
            FatalConfigError: The target URL or selector is unusable
        """
        url = str(target.url)
        started = time.perf_counter()
        attempts = 0
        last_error: Optional[ScrapingError] = None
        last_method = self.strategies[0].method

        for index, strategy in enumerate(self.strategies):
            last_method = strategy.method
            if on_strategy is not None:
                on_strategy(strategy.method)
            state = RetryState()
            try:
                try:
                    content = await self._run_strategy(strategy, target, state, index, started)
                finally:
                    attempts += state.attempt + 1
                items = self.hasher.extract(content, target.selector)
            except FatalConfigError:
                raise
            except ScrapingError as e:
                last_error = e
                if index + 1 < len(self.strategies):
                    self.logger.info(
                        "Escalating fetch strategy",
                        url=url,
                        from_method=strategy.method.value,
                        to_method=self.strategies[index + 1].method.value,
                        classification=e.classification.value,
                        reason=e.message
                    )
                continue

            outcome = ScrapeOutcome(
                method=strategy.method,
                success=True,
                fingerprint=self.hasher.hash_items(items),
                item_count=len(items),
                attempts=attempts,
                elapsed_seconds=time.perf_counter() - started,
                memory_mb=current_memory_mb(),
            )
            self.validate_performance(url, outcome)
            return outcome

        outcome = ScrapeOutcome.failed(
            method=last_method,
            error=last_error.classification if last_error else ErrorClassification.UNKNOWN,
            error_message=last_error.message if last_error else "no strategy produced content",
            attempts=attempts,
            elapsed_seconds=time.perf_counter() - started,
            memory_mb=current_memory_mb(),
        )
        self.logger.warning(
            "All fetch strategies failed",
            url=url,
            attempts=attempts,
            classification=outcome.error.value,
            error=outcome.error_message
        )
        return outcome

    async def _run_strategy(self, strategy: FetchStrategy, target, state: RetryState, index: int, started: float) -> str:
        attempt = self.retry_policy.execute(
            lambda: strategy.fetch_content(target),
            state=state,
            sleep=self.sleep,
            label=strategy.method.value,
        )
        if self.time_budget is None:
            return await attempt

        time_slice = self.time_slice(index, self.time_budget - (time.perf_counter() - started))
        try:
            return await asyncio.wait_for(attempt, timeout=time_slice)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(
                f"{strategy.method.value} strategy used up its {time_slice:.1f}s time slice",
                context={"url": str(target.url), "time_slice": round(time_slice, 3)},
            ) from e

    def validate_performance(self, url: str, outcome: ScrapeOutcome) -> bool:
        """
        Compare an outcome against the soft performance targets.

        Returns:
            True when both elapsed time and memory are within targets
        """
        within = True
        if outcome.elapsed_seconds > self.elapsed_soft_limit:
            within = False
            self.logger.warning(
                "Fetch exceeded elapsed time target",
                url=url,
                method=outcome.method.value,
                elapsed_seconds=round(outcome.elapsed_seconds, 3),
                target_seconds=self.elapsed_soft_limit
            )
        if outcome.memory_mb is not None and outcome.memory_mb > self.memory_soft_limit_mb:
            within = False
            self.logger.warning(
                "Fetch exceeded memory target",
                url=url,
                memory_mb=outcome.memory_mb,
                target_mb=self.memory_soft_limit_mb
            )
        return within

    async def close(self) -> None:
        """Release the HTTP client and every browser session."""
        for strategy in self.strategies:
            try:
                await strategy.close()
            except Exception as e:
                self.logger.warning("Failed to close strategy", method=strategy.method.value, error=str(e))
        if self.pool is not None:
            await self.pool.close()
