"""
Pytest configuration and shared fixtures.
"""

import asyncio

import pytest

from fetcher.models import FetchMethod, ScrapeOutcome
from monitor.alerting import NotificationSink
from monitor.clock import VirtualClock
from monitor.models import MonitorConfig, MonitoredTarget
from storage.base import InMemoryTargetStore
from utilities.logger import null_logger


def success(fingerprint, method=FetchMethod.HTTP, elapsed_seconds=0.1):
    return ScrapeOutcome(
        method=method,
        success=True,
        fingerprint=fingerprint,
        item_count=1,
        attempts=1,
        elapsed_seconds=elapsed_seconds,
    )


class FakeChain:
    """
    Scripted stand-in for FetchStrategyChain.

    `responses` maps target id to a list of fingerprints, ScrapeOutcomes or
    exceptions; the last entry repeats once the list is exhausted. `reach` lists
    the strategy methods announced through `on_strategy` before each response.
    """

    methods = [FetchMethod.HTTP, FetchMethod.DOM_FALLBACK, FetchMethod.BROWSER_FALLBACK]

    def __init__(self, responses=None, hang=False, reach=None):
        self.responses = {key: list(value) for key, value in (responses or {}).items()}
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.gate = None
        self.hang = hang
        self.reach = list(reach or [FetchMethod.HTTP])
        self.closed = False

    def hold(self):
        self.gate = asyncio.Event()
        return self.gate

    async def fetch(self, target, on_strategy=None):
        self.calls.append(target.id)
        if on_strategy is not None:
            for method in self.reach:
                on_strategy(method)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.gate is not None:
                await self.gate.wait()
            script = self.responses.get(target.id) or [f"fp-{target.id}"]
            value = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(value, BaseException):
                raise value
            if isinstance(value, ScrapeOutcome):
                return value
            return success(value)
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


class RecordingNotifier(NotificationSink):
    """Collects every notification event."""

    def __init__(self):
        self.new_content = []
        self.errors = []
        self.reports = []
        self.closed = False

    async def notify_new_content(self, target, diff):
        self.new_content.append((target.id, diff))

    async def notify_error(self, target, report):
        self.errors.append((target.id, report))

    async def notify_periodic_report(self, statistics):
        self.reports.append(statistics)

    async def close(self):
        self.closed = True


class FakeRoute:
    def __init__(self, resource_type):
        self.request = type("Request", (), {"resource_type": resource_type})()
        self.aborted = False
        self.continued = False

    async def abort(self):
        self.aborted = True

    async def continue_(self):
        self.continued = True


class FakePage:
    def __init__(self, content="<html><body><ul><li>A</li></ul></body></html>", status=200,
                 goto_error=None, selector_error=None):
        self._content = content
        self.status = status
        self.goto_error = goto_error
        self.selector_error = selector_error
        self.route_handler = None
        self.goto_calls = []
        self.evaluated = []
        self.waited_ms = []

    async def route(self, pattern, handler):
        self.route_handler = handler

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append((url, wait_until))
        if self.goto_error is not None:
            raise self.goto_error
        return type("Response", (), {"status": self.status})()

    async def wait_for_selector(self, selector, timeout=None):
        if self.selector_error is not None:
            raise self.selector_error

    async def evaluate(self, script):
        self.evaluated.append(script)

    async def wait_for_timeout(self, ms):
        self.waited_ms.append(ms)

    async def wait_for_load_state(self, state, timeout=None):
        return None

    async def content(self):
        return self._content


class FakeContext:
    def __init__(self, page_factory, options):
        self.page_factory = page_factory
        self.options = options
        self.init_scripts = []
        self.pages = []
        self.closed = False

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory):
        self.page_factory = page_factory
        self.contexts = []
        self.connected = True
        self.closed = False

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self.page_factory, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakeLauncher:
    """Launcher handing out FakeBrowser instances."""

    def __init__(self, page_factory=FakePage):
        self.page_factory = page_factory
        self.browsers = []
        self.stopped = False

    async def launch(self, headless=True):
        browser = FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return browser

    async def stop(self):
        self.stopped = True

    @property
    def contexts(self):
        return [context for browser in self.browsers for context in browser.contexts]


@pytest.fixture
def logger():
    return null_logger()


@pytest.fixture
def clock():
    return VirtualClock(settle_rounds=50)


@pytest.fixture
def monitor_config():
    return MonitorConfig(
        poll_interval_seconds=300,
        tick_interval_seconds=5,
        check_timeout_seconds=5,
        max_concurrent_checks=3,
        stop_grace_period_seconds=1,
        report_interval_seconds=None,
        failure_backoff_base_seconds=30,
        failure_backoff_multiplier=2,
    )


@pytest.fixture
def sample_target():
    return MonitoredTarget(
        id="target-1",
        url="https://listings.example.com/search?area=tokyo",
        name="Tokyo rentals",
        owner_id="user-1",
        selector="#item-list",
    )


@pytest.fixture
def make_targets():
    def _make(count, **kwargs):
        return [
            MonitoredTarget(id=f"target-{i}", url=f"https://listings.example.com/page/{i}", **kwargs)
            for i in range(count)
        ]
    return _make


@pytest.fixture
def memory_store():
    return InMemoryTargetStore()


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def listing_page():
    """Listing page markup with a configurable set of items."""
    def _page(*items, extra=""):
        rows = "".join(f"<li class='item'>{item}</li>" for item in items)
        return (
            "<html><head><title>Search results</title>"
            "<script>var renderedAt = Date.now();</script></head>"
            f"<body><nav>Menu</nav><ul id='item-list'>{rows}</ul>{extra}</body></html>"
        )
    return _page
