"""
Content fetch strategies, cheapest first.

This module provides:
- HttpStrategy: plain HTTP GET with static markup
- DomStrategy: headless page with scripts executed and heavy resources blocked
- BrowserStrategy: stealth browser context that waits for network idle and scrolls
"""

from typing import Dict, Optional

import httpx
import structlog
from asyncio_throttle import Throttler

from .browser_pool import BrowserPool
from .detection import detect_bot_block
from .errors import (
    BotDetectedError,
    ErrorClassification,
    FetchTimeoutError,
    ScrapingError,
    classify_exception,
    error_for_status,
)
from .models import FetchMethod

logger = structlog.get_logger(__name__)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media"})


class FetchStrategy:
    """Base class for one way of obtaining page markup."""

    method: FetchMethod = FetchMethod.HTTP

    async def fetch_content(self, target) -> str:
        """
        Fetch raw markup for a target.

        Args:
            target: Object with `url` and optional `selector`

        Returns:
            Page markup

        Raises:
            ScrapingError: Classified failure
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @staticmethod
    def _raise_for_block(content: str, url: str, status_code: Optional[int] = None) -> None:
        reason = detect_bot_block(content)
        if reason:
            raise BotDetectedError(
                f"Bot block page detected: {reason}",
                context={"url": url, "reason": reason},
                status_code=status_code,
            )


class HttpStrategy(FetchStrategy):
    """Static HTTP fetch over a shared httpx client."""

    method = FetchMethod.HTTP

    def __init__(
        self,
        timeout: float = 30,
        headers: Optional[Dict[str, str]] = None,
        rate_limit_per_second: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
        logger=None,
    ):
        """
        Initialize the HTTP strategy.

        Args:
            timeout: Request timeout in seconds
            headers: Default request headers
            rate_limit_per_second: Request rate across all targets
            client: Pre-built client, mainly for tests
            logger: structlog logger
        """
        self.timeout = timeout
        self.headers = headers or {}
        self.throttler = None
        if rate_limit_per_second:
            # Throttler counts whole requests per period, so spread one request over 1/rate seconds
            self.throttler = Throttler(rate_limit=1, period=1 / rate_limit_per_second)
        self._client = client
        self._owns_client = client is None
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="http_strategy")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                follow_redirects=True,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
        return self._client

    async def _get(self, url: str) -> httpx.Response:
        if self.throttler is None:
            return await self.client.get(url)
        async with self.throttler:
            return await self.client.get(url)

    async def fetch_content(self, target) -> str:
        url = str(target.url)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise classify_exception(e, url) from e

        if response.status_code >= 400:
            raise error_for_status(response.status_code, url)

        content = response.text
        self._raise_for_block(content, url, response.status_code)

        self.logger.debug(
            "Fetched page over HTTP",
            url=url,
            status_code=response.status_code,
            size=len(content)
        )
        return content

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class _PageStrategy(FetchStrategy):
    """Shared navigation logic for browser-backed strategies."""

    stealth = False
    wait_until = "domcontentloaded"

    def __init__(
        self,
        pool: BrowserPool,
        timeout: float = 30,
        selector_timeout: float = 10,
        logger=None,
    ):
        self.pool = pool
        self.timeout = timeout
        self.selector_timeout = selector_timeout
        self.logger = (logger or structlog.get_logger(__name__)).bind(component=f"{self.method.value}_strategy")

    async def prepare_page(self, page) -> None:
        return None

    async def settle_page(self, page, target) -> None:
        return None

    async def fetch_content(self, target) -> str:
        url = str(target.url)
        try:
            async with self.pool.session(stealth=self.stealth) as context:
                page = await context.new_page()
                await self.prepare_page(page)

                response = await page.goto(url, wait_until=self.wait_until, timeout=self.timeout * 1000)
                status_code = response.status if response is not None else None
                if status_code is not None and status_code >= 400:
                    raise error_for_status(status_code, url)

                if target.selector:
                    await self._wait_for_selector(page, target.selector, url)
                await self.settle_page(page, target)

                content = await page.content()
        except ScrapingError:
            raise
        except Exception as e:
            raise classify_exception(e, url) from e

        self._raise_for_block(content, url, status_code)
        self.logger.debug("Rendered page", url=url, status_code=status_code, size=len(content))
        return content

    async def _wait_for_selector(self, page, selector: str, url: str) -> None:
        # A missing selector surfaces later as an extraction failure
        try:
            await page.wait_for_selector(selector, timeout=self.selector_timeout * 1000)
        except Exception as e:
            error = classify_exception(e, url)
            if error.classification != ErrorClassification.TIMEOUT:
                raise
            self.logger.debug("Selector did not appear", url=url, selector=selector)


class DomStrategy(_PageStrategy):
    """Headless page with scripts running and images, fonts and media blocked."""

    method = FetchMethod.DOM_FALLBACK
    stealth = False
    wait_until = "domcontentloaded"

    async def prepare_page(self, page) -> None:
        async def block_heavy_resources(route):
            if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
                await route.abort()
            else:
                await route.continue_()

        await page.route("**/*", block_heavy_resources)


class BrowserStrategy(_PageStrategy):
    """Full browser with stealth context, network-idle wait and scrolling."""

    method = FetchMethod.BROWSER_FALLBACK
    stealth = True
    wait_until = "networkidle"

    def __init__(
        self,
        pool: BrowserPool,
        timeout: float = 60,
        selector_timeout: float = 15,
        settle_ms: int = 2000,
        challenge_wait_ms: int = 10000,
        logger=None,
    ):
        super().__init__(pool, timeout=timeout, selector_timeout=selector_timeout, logger=logger)
        self.settle_ms = settle_ms
        self.challenge_wait_ms = challenge_wait_ms

    async def settle_page(self, page, target) -> None:
        await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        await page.wait_for_timeout(self.settle_ms)

        # Verification interstitials often clear on their own after a few seconds
        content = await page.content()
        if detect_bot_block(content) and self.challenge_wait_ms:
            self.logger.info("Waiting for verification page to clear", url=str(target.url))
            await page.wait_for_timeout(self.challenge_wait_ms)
            try:
                await page.wait_for_load_state("networkidle", timeout=self.timeout * 1000)
            except Exception as e:
                if not isinstance(classify_exception(e), FetchTimeoutError):
                    raise
