# tests/conftest.py
# Shared fakes: a scripted Playwright page/context/browser and job factories

import random
from typing import Any, Callable, Dict, List, Optional

import pytest

from config.settings import BrowserConfig, EngineConfig
from core.gateway import InMemoryGateway
from core.models import Job
from core.notifications import RecordingChannel
from scrapers.proxy_pool import ProxyPoolManager
from scrapers.session_driver import SessionDriver


class FakeElement:
    def __init__(
        self,
        text: str = "",
        attrs: Optional[Dict[str, str]] = None,
        html: Optional[str] = None,
        disabled: bool = False,
        on_click: Optional[Callable[[], None]] = None,
    ):
        self.text = text
        self.attrs = attrs or {}
        self.html = html if html is not None else text
        self.disabled = disabled
        self.on_click = on_click
        self.clicks = 0

    async def text_content(self):
        return self.text

    async def inner_html(self):
        return self.html

    async def get_attribute(self, name):
        return self.attrs.get(name)

    async def is_disabled(self):
        return self.disabled

    async def click(self):
        self.clicks += 1
        if self.on_click is not None:
            self.on_click()


class FakePage:
    """A page whose DOM is a list of ``{selector: [elements]}`` snapshots.

    Clicking the element under ``next_selector`` moves to the next snapshot.
    """

    def __init__(
        self,
        snapshots: Optional[List[Dict[str, List[FakeElement]]]] = None,
        url: str = "https://example.com/list",
        next_selector: str = "a.next",
        goto_error: Optional[BaseException] = None,
        wait_error: Optional[BaseException] = None,
    ):
        self.snapshots = snapshots or [{}]
        self.index = 0
        self.url = url
        self.next_selector = next_selector
        self.goto_error = goto_error
        self.wait_error = wait_error
        self.goto_calls: List[Dict[str, Any]] = []
        self.waited_for: List[str] = []
        self.headers: Dict[str, str] = {}
        self.viewport: Optional[Dict[str, int]] = None
        self.default_timeout: Optional[int] = None
        self.closed = False
        self.hang = False

    def advance(self):
        self.index += 1

    async def query_selector_all(self, selector):
        return list(self.snapshots[self.index].get(selector, []))

    async def query_selector(self, selector):
        found = self.snapshots[self.index].get(selector, [])
        return found[0] if found else None

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url

    async def wait_for_selector(self, selector, timeout=None):
        self.waited_for.append(selector)
        if self.wait_error is not None:
            raise self.wait_error

    async def set_extra_http_headers(self, headers):
        self.headers = dict(headers)

    async def set_viewport_size(self, viewport):
        self.viewport = dict(viewport)

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def screenshot(self, full_page=False):
        return b"\x89PNG-page-%d" % self.index

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page: FakePage, options: Dict[str, Any]):
        self.page = page
        self.options = options
        self.init_scripts: List[str] = []
        self.cookies: List[Dict[str, str]] = []
        self.closed = False

    async def new_page(self):
        return self.page

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def add_cookies(self, cookies):
        self.cookies.extend(cookies)

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory: Optional[Callable[[], FakePage]] = None):
        self.page_factory = page_factory or FakePage
        self.contexts: List[FakeContext] = []
        self.connected = True

    async def new_context(self, **options):
        context = FakeContext(self.page_factory(), options)
        self.contexts.append(context)
        return context

    def is_connected(self):
        return self.connected

    async def close(self):
        self.connected = False


async def no_sleep(_seconds):
    return None


def items_snapshot(values: List[str], with_next: bool, page: Optional[FakePage] = None) -> Dict[str, List[FakeElement]]:
    snapshot = {".item": [FakeElement(text=v) for v in values]}
    if with_next:
        snapshot["a.next"] = [FakeElement(text="Next", on_click=lambda: page.advance() if page else None)]
    return snapshot


def paged_site(pages: List[List[str]], last_has_next: bool = False) -> FakePage:
    """Build a FakePage with one snapshot per entry of ``pages``."""
    page = FakePage()
    page.snapshots = [
        items_snapshot(values, with_next=(i < len(pages) - 1) or last_has_next, page=page)
        for i, values in enumerate(pages)
    ]
    return page


def make_job(job_id: str = "job-1", user_id: str = "user-1", **overrides) -> Job:
    config = overrides.pop("config", None) or {
        "selectors": [{"name": "items", "selector": ".item", "multiple": True}],
        "pagination": {"nextPageSelector": "a.next", "maxPages": 1, "settleDelayMs": 0},
    }
    data = {
        "id": job_id,
        "userId": user_id,
        "name": f"Job {job_id}",
        "url": "https://example.com/list",
        "config": config,
    }
    data.update(overrides)
    return Job.model_validate(data)


def make_driver(browser: FakeBrowser, proxy_manager: Optional[ProxyPoolManager] = None) -> SessionDriver:
    async def factory():
        return browser

    return SessionDriver(
        proxy_manager or ProxyPoolManager(),
        config=BrowserConfig(locator_timeout_ms=500),
        browser_factory=factory,
        sleep=no_sleep,
        rng=random.Random(7),
    )


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def engine_config():
    return EngineConfig(
        max_concurrency=2,
        tick_seconds=0.01,
        starts_per_tick=1,
        backoff_seconds=60,
        max_retries=2,
    )
