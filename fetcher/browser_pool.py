"""
Shared pool of headless browsers.

This module provides:
- PlaywrightLauncher starting Chromium processes on demand
- BrowserPool bounding browser processes and handing out exclusive contexts
- Stealth context settings for the full-browser strategy
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
window.chrome = { runtime: {} };
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['ja-JP', 'ja', 'en-US', 'en'] });
"""

STEALTH_CONTEXT_OPTIONS = {
    "viewport": {"width": 1920, "height": 1080},
    "locale": "ja-JP",
    "timezone_id": "Asia/Tokyo",
    "extra_http_headers": {"Accept-Language": "ja,en-US;q=0.9,en;q=0.8"},
}


class PlaywrightLauncher:
    """Starts Chromium through Playwright, one driver per launcher."""

    def __init__(self):
        self._playwright = None

    async def launch(self, headless: bool = True):
        if self._playwright is None:
            from playwright.async_api import async_playwright
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=headless, args=LAUNCH_ARGS)

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class BrowserPool:
    """
    Bounded pool of browser processes.
    Every checkout gets its own browser context, closed on exit.
    """

    def __init__(
        self,
        size: int = 2,
        headless: bool = True,
        user_agent: Optional[str] = None,
        launcher=None,
        logger=None,
    ):
        """
        Initialize the pool.

        Args:
            size: Maximum number of browser processes and concurrent sessions
            headless: Launch browsers without a window
            user_agent: User agent applied to stealth contexts
            launcher: Object with async launch(headless) and stop()
            logger: structlog logger
        """
        if size < 1:
            raise ValueError("size must be >= 1")
        self.size = size
        self.headless = headless
        self.user_agent = user_agent
        self.launcher = launcher or PlaywrightLauncher()
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="browser_pool")

        self._semaphore = asyncio.Semaphore(size)
        self._launch_lock = asyncio.Lock()
        self._idle: List[Any] = []
        self._browsers: List[Any] = []
        self._closed = False
        self.open_sessions = 0

    @property
    def browser_count(self) -> int:
        return len(self._browsers)

    async def _acquire_browser(self):
        async with self._launch_lock:
            while self._idle:
                browser = self._idle.pop()
                if self._is_connected(browser):
                    return browser
                self._browsers.remove(browser)

            browser = await self.launcher.launch(headless=self.headless)
            self._browsers.append(browser)
            self.logger.info("Launched browser", browsers=len(self._browsers), headless=self.headless)
            return browser

    @staticmethod
    def _is_connected(browser) -> bool:
        is_connected = getattr(browser, "is_connected", None)
        return is_connected() if callable(is_connected) else True

    def _context_options(self, stealth: bool) -> Dict[str, Any]:
        if not stealth:
            return {}
        options = dict(STEALTH_CONTEXT_OPTIONS)
        if self.user_agent:
            options["user_agent"] = self.user_agent
        return options

    @asynccontextmanager
    async def session(self, stealth: bool = False) -> AsyncIterator[Any]:
        """
        Check out an exclusive browser context.

        Args:
            stealth: Apply realistic context settings and the stealth init script

        Yields:
            Browser context, closed when the block exits for any reason
        """
        if self._closed:
            raise RuntimeError("Browser pool is closed")

        async with self._semaphore:
            browser = await self._acquire_browser()
            context = None
            try:
                context = await browser.new_context(**self._context_options(stealth))
                if stealth:
                    await context.add_init_script(STEALTH_SCRIPT)
                self.open_sessions += 1
                try:
                    yield context
                finally:
                    self.open_sessions -= 1
            finally:
                if context is not None:
                    try:
                        await context.close()
                    except Exception as e:
                        self.logger.warning("Failed to close browser context", error=str(e))
                if not self._closed:
                    self._idle.append(browser)

    async def close(self) -> None:
        """Close every browser process and stop the driver."""
        self._closed = True
        browsers, self._browsers, self._idle = self._browsers, [], []
        for browser in browsers:
            try:
                await browser.close()
            except Exception as e:
                self.logger.warning("Failed to close browser", error=str(e))
        await self.launcher.stop()
        if browsers:
            self.logger.info("Browser pool closed", browsers_closed=len(browsers))
