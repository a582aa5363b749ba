"""
scrapers/session_driver.py

PLAYWRIGHT SESSION DRIVER
=========================

Owns the headless-browser lifecycle for job runs.

Responsibilities:
├── One shared Chromium process, launched lazily and reused by every job
├── One isolated context + page per job, closed on every exit path
├── Proxy acquisition from the job's pool (sticky pools keyed by job id)
├── Identity: user agent, merged headers, host-scoped cookies, jittered viewport
├── Fingerprint profile applied at page initialisation (apply_profile)
└── Navigation with bounded random delays and an optional locator wait

Usage by the job runner:
    async with driver.open_session(job) as session:
        await driver.navigate(session, job)
        result = await extraction.paginate(session.page, job.config)
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.settings import BrowserConfig, browser_config
from core.errors import BrowserUnavailableError, JobRunError, LocatorTimeoutError, NavigationTimeoutError
from core.models import Job, ScrapingConfig
from scrapers.proxy_pool import ProxyEndpoint, ProxyPoolManager, RotationStrategy

LOG = logging.getLogger(__name__)

__all__ = [
    "FingerprintProfile",
    "BrowserSession",
    "SessionDriver",
    "apply_profile",
    "profile_for_config",
    "DEFAULT_USER_AGENT",
    "DEFAULT_HEADERS",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-infobars",
    "--no-default-browser-check",
]

_STEALTH_TEMPLATE = """
(() => {
    const profile = %s;
    if (profile.hideWebdriver) {
        Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    }
    const plugins = profile.plugins.map((name) => ({
        name, description: name, filename: name.toLowerCase().replace(/\\s+/g, '-'), length: 1,
    }));
    Object.defineProperty(navigator, 'plugins', { get: () => plugins });
    const mimeTypes = profile.mimeTypes.map((type) => ({ type, suffixes: '', description: type }));
    Object.defineProperty(navigator, 'mimeTypes', { get: () => mimeTypes });
    Object.defineProperty(navigator, 'languages', { get: () => profile.languages });
    window.chrome = window.chrome || { runtime: {} };
    const permissions = window.navigator.permissions;
    if (permissions && permissions.query) {
        const originalQuery = permissions.query.bind(permissions);
        permissions.query = (parameters) => (
            parameters && parameters.name === 'notifications'
                ? Promise.resolve({
                    state: typeof Notification !== 'undefined'
                        ? Notification.permission
                        : profile.notificationPermission,
                })
                : originalQuery(parameters)
        );
    }
})();
"""


# =================================================================================
# FINGERPRINT PROFILE
# =================================================================================


@dataclass(frozen=True)
class FingerprintProfile:
    """Browser-environment properties presented to the target site."""

    user_agent: str = DEFAULT_USER_AGENT
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    languages: Tuple[str, ...] = ("en-US", "en")
    plugins: Tuple[str, ...] = ("Chrome PDF Plugin", "Chrome PDF Viewer", "Native Client")
    mime_types: Tuple[str, ...] = ("application/pdf", "application/x-google-chrome-pdf")
    viewport_width: int = 1920
    viewport_height: int = 1080
    viewport_jitter: int = 100
    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    notification_permission: str = "default"
    hide_webdriver: bool = True

    def viewport(self, rng: random.Random) -> Dict[str, int]:
        jitter = max(self.viewport_jitter, 1)
        return {
            "width": self.viewport_width + rng.randrange(jitter),
            "height": self.viewport_height + rng.randrange(jitter),
        }

    def context_options(self) -> Dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
        }

    def init_script(self) -> str:
        payload = {
            "hideWebdriver": self.hide_webdriver,
            "plugins": list(self.plugins),
            "mimeTypes": list(self.mime_types),
            "languages": list(self.languages),
            "notificationPermission": self.notification_permission,
        }
        return _STEALTH_TEMPLATE % json.dumps(payload)


def profile_for_config(config: ScrapingConfig, base: Optional[FingerprintProfile] = None) -> FingerprintProfile:
    """Overlay a job's identity overrides on ``base``."""
    base = base or FingerprintProfile()
    return replace(
        base,
        user_agent=config.user_agent or base.user_agent,
        headers={**base.headers, **config.headers},
        viewport_width=config.viewport.width,
        viewport_height=config.viewport.height,
    )


@dataclass
class BrowserSession:
    """One job's isolated context and page."""

    job_id: str
    context: BrowserContext
    page: Optional[Page] = None
    proxy: Optional[ProxyEndpoint] = None
    pool_name: str = "default"
    viewport: Dict[str, int] = field(default_factory=dict)
    closed: bool = False


async def apply_profile(
    session: BrowserSession,
    profile: FingerprintProfile,
    viewport: Optional[Dict[str, int]] = None,
) -> None:
    """Install the fingerprint profile on a fresh session, before navigation."""
    await session.context.add_init_script(profile.init_script())
    if session.page is None:
        return
    await session.page.set_extra_http_headers(profile.headers)
    if viewport:
        await session.page.set_viewport_size(viewport)
        session.viewport = viewport


# =================================================================================
# SESSION DRIVER
# =================================================================================


BrowserFactory = Callable[[], Awaitable[Browser]]


class SessionDriver:
    """Shared browser + per-job page lifecycle."""

    def __init__(
        self,
        proxy_manager: ProxyPoolManager,
        config: BrowserConfig = browser_config,
        browser_factory: Optional[BrowserFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.proxy_manager = proxy_manager
        self.config = config
        self._browser_factory = browser_factory or self._launch_chromium
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self._sessions: Dict[str, BrowserSession] = {}

    async def _launch_chromium(self) -> Browser:
        # a relaunch after a disconnect must not leak the previous driver
        await self._stop_playwright()
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=LAUNCH_ARGS,
        )

    async def _stop_playwright(self) -> None:
        if self._playwright is None:
            return
        try:
            await self._playwright.stop()
        except PlaywrightError as e:
            LOG.warning("Error stopping Playwright: %s", e)
        self._playwright = None

    async def initialize(self) -> Browser:
        """Lazy init: launch the shared browser once."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            try:
                self._browser = await self._browser_factory()
            except PlaywrightError as e:
                raise BrowserUnavailableError(f"Could not launch browser: {e}") from e
            LOG.info("Shared browser launched (headless=%s)", self.config.headless)
            return self._browser

    @property
    def active_sessions(self) -> Dict[str, BrowserSession]:
        return dict(self._sessions)

    def _acquire_proxy(self, job: Job) -> Optional[ProxyEndpoint]:
        pool_name = job.config.proxy_pool
        pool = self.proxy_manager.get_pool(pool_name)
        if pool is not None and pool.strategy is RotationStrategy.STICKY:
            return self.proxy_manager.next_endpoint(pool_name, key=job.id)
        return self.proxy_manager.next_endpoint(pool_name)

    @asynccontextmanager
    async def open_session(self, job: Job) -> AsyncIterator[BrowserSession]:
        """Yield a ready page for ``job``; page and context are always closed."""
        browser = await self.initialize()
        proxy = self._acquire_proxy(job)
        profile = profile_for_config(job.config)

        try:
            context = await browser.new_context(
                proxy=proxy.playwright_config() if proxy else None,
                **profile.context_options(),
            )
        except PlaywrightError as e:
            raise BrowserUnavailableError(f"Could not open browser context: {e}") from e

        session = BrowserSession(
            job_id=job.id,
            context=context,
            proxy=proxy,
            pool_name=job.config.proxy_pool,
        )
        self._sessions[job.id] = session
        try:
            session.page = await context.new_page()
            session.page.set_default_timeout(self.config.locator_timeout_ms)
            await apply_profile(session, profile, viewport=profile.viewport(self._rng))
            if job.config.cookies:
                host = urlparse(job.url).hostname or ""
                await context.add_cookies(
                    [
                        {"name": name, "value": value, "domain": host, "path": "/"}
                        for name, value in job.config.cookies.items()
                    ]
                )
            LOG.info(
                "Session opened | job=%s | proxy=%s | viewport=%s",
                job.id,
                proxy.server if proxy else "direct",
                session.viewport,
            )
            yield session
        finally:
            self._sessions.pop(job.id, None)
            await self._teardown(session)

    async def navigate(self, session: BrowserSession, job: Job) -> None:
        """Jittered ``goto`` + network-idle wait + optional locator wait."""
        page = session.page
        config = job.config
        await self._sleep(self._rng.uniform(*self.config.pre_navigation_jitter))

        try:
            await page.goto(job.url, wait_until="networkidle", timeout=config.timeout)
        except PlaywrightTimeoutError as e:
            self.proxy_manager.report_failure(session.proxy, session.pool_name)
            raise NavigationTimeoutError(job.url, config.timeout) from e
        except PlaywrightError as e:
            if session.closed:
                raise
            self.proxy_manager.report_failure(session.proxy, session.pool_name)
            raise JobRunError(f"Navigation to {job.url} failed: {e}") from e

        await self._sleep(self._rng.uniform(*self.config.post_load_jitter))

        if config.waits_for_locator:
            timeout = self.config.locator_timeout_ms
            try:
                await page.wait_for_selector(config.wait_for, timeout=timeout)
            except PlaywrightTimeoutError as e:
                raise LocatorTimeoutError(config.wait_for, timeout) from e

    async def close_session(self, job_id: str) -> bool:
        """Tear down a live session (explicit cancel). Returns False if none."""
        session = self._sessions.pop(job_id, None)
        if session is None:
            return False
        await self._teardown(session)
        LOG.info("Session for job %s closed on request", job_id)
        return True

    async def _teardown(self, session: BrowserSession) -> None:
        if session.closed:
            return
        session.closed = True
        for closable in (session.page, session.context):
            if closable is None:
                continue
            try:
                await closable.close()
            except PlaywrightError as e:
                LOG.debug("Ignoring close error for job %s: %s", session.job_id, e)

    async def shutdown(self) -> None:
        """Close every live session, then the browser."""
        for job_id in list(self._sessions):
            await self.close_session(job_id)
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                LOG.warning("Error closing browser: %s", e)
            self._browser = None
            LOG.info("Shared browser closed")
        await self._stop_playwright()
