"""
Browser session lifecycle

Every capture gets its own browser process and context. How the browser
binary is obtained depends on where the service runs, so it is abstracted
behind a launcher chosen once at startup.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .config import Settings
from .errors import SessionError, TeardownError

logger = logging.getLogger(__name__)

LAUNCH_ARGS: List[str] = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-accelerated-2d-canvas',
    '--no-first-run',
    '--disable-gpu',
    '--disable-web-security',
    '--disable-features=VizDisplayCompositor',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-blink-features=AutomationControlled',
    '--disable-ipc-flooding-protection',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-extensions',
    '--disable-sync',
    '--metrics-recording-only',
    '--no-report-upload',
    '--disable-breakpad',
]

# Serverless sandboxes cannot fork zygote processes
PACKAGED_EXTRA_ARGS: List[str] = ['--single-process', '--no-zygote']


@dataclass(frozen=True)
class SessionOptions:
    """Everything a fresh browsing context is configured with"""

    width: int
    height: int
    user_agent: str
    locale: str = "zh-CN"
    timezone_id: str = "Asia/Shanghai"
    headers: Dict[str, str] = field(default_factory=dict)
    default_timeout_ms: int = 60000


class PlaywrightSession:
    """One browser + context + page, owned by a single capture"""

    def __init__(self, playwright: Playwright, browser: Optional[Browser] = None,
                 context: Optional[BrowserContext] = None, page: Optional[Page] = None):
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self.closed = False

    async def apply_stealth(self, stealth):
        await stealth.apply_stealth_async(self.context)

    async def add_init_script(self, script: str):
        await self.context.add_init_script(script)

    async def route(self, handler: Callable):
        await self.page.route("**/*", handler)

    async def navigate(self, url: str, wait_until: str, timeout: int):
        response = await self.page.goto(url, wait_until=wait_until, timeout=timeout)
        return response.status if response else None

    async def reload(self, wait_until: str, timeout: int):
        await self.page.reload(wait_until=wait_until, timeout=timeout)

    async def pause(self, ms: float):
        await self.page.wait_for_timeout(ms)

    async def wait_for_selector(self, selector: str, timeout: int):
        await self.page.wait_for_selector(selector, timeout=timeout)

    async def add_style(self, css: str):
        await self.page.add_style_tag(content=css)

    async def scroll_height(self) -> int:
        return await self.page.evaluate("() => document.body ? document.body.scrollHeight : 0")

    async def scroll_by(self, distance: int):
        await self.page.evaluate("(distance) => window.scrollBy(0, distance)", distance)

    async def scroll_to_top(self):
        await self.page.evaluate("() => window.scrollTo(0, 0)")

    async def move_pointer(self, x: float, y: float):
        await self.page.mouse.move(x, y)

    async def capture(self, format: str, quality: Optional[int], full_page: bool) -> bytes:
        return await self.page.screenshot(
            type=format,
            quality=quality if format == "jpeg" else None,
            full_page=full_page,
            animations="disabled",
        )

    async def close(self):
        """Release context, browser and driver; keeps going past failures"""
        if self.closed:
            return
        self.closed = True

        failures = []
        for name, closer in (
            ("context", self.context.close if self.context else None),
            ("browser", self.browser.close if self.browser else None),
            ("playwright", self.playwright.stop if self.playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                failures.append(f"{name}: {e}")

        if failures:
            raise TeardownError("; ".join(failures))


class SessionLauncher:
    """Opens Playwright sessions; subclasses decide where Chromium comes from"""

    name = "base"

    async def _connect(self, playwright: Playwright) -> Browser:
        raise NotImplementedError

    async def launch(self, options: SessionOptions) -> PlaywrightSession:
        playwright = await async_playwright().start()
        session = PlaywrightSession(playwright)
        try:
            session.browser = await self._connect(playwright)
            session.context = await session.browser.new_context(
                viewport={'width': options.width, 'height': options.height},
                user_agent=options.user_agent,
                locale=options.locale,
                timezone_id=options.timezone_id,
                device_scale_factor=1,
                is_mobile=False,
                has_touch=False,
                java_script_enabled=True,
                bypass_csp=True,
                ignore_https_errors=True,
                extra_http_headers=dict(options.headers),
            )
            session.page = await session.context.new_page()
            session.page.set_default_timeout(options.default_timeout_ms)
            session.page.set_default_navigation_timeout(options.default_timeout_ms)
        except BaseException:
            try:
                await session.close()
            except TeardownError as e:
                logger.warning("Cleanup after failed launch also failed: %s", e)
            raise
        return session


class LocalChromiumLauncher(SessionLauncher):
    """Playwright's bundled Chromium"""

    name = "local"

    def __init__(self, args: Optional[List[str]] = None):
        self.args = list(args if args is not None else LAUNCH_ARGS)

    async def _connect(self, playwright: Playwright) -> Browser:
        return await playwright.chromium.launch(headless=True, args=self.args)


class PackagedChromiumLauncher(LocalChromiumLauncher):
    """A Chromium build shipped with the deployment (e.g. a serverless layer)"""

    name = "packaged"

    def __init__(self, executable_path: str, args: Optional[List[str]] = None):
        super().__init__(args)
        self.executable_path = executable_path
        self.args += [arg for arg in PACKAGED_EXTRA_ARGS if arg not in self.args]

    async def _connect(self, playwright: Playwright) -> Browser:
        if self.executable_path and os.path.exists(self.executable_path):
            return await playwright.chromium.launch(
                headless=True, executable_path=self.executable_path, args=self.args
            )
        logger.warning(
            "Packaged Chromium not found at %r, using bundled Chromium", self.executable_path
        )
        return await playwright.chromium.launch(headless=True, args=self.args)


class RemoteChromiumLauncher(SessionLauncher):
    """A Chromium already running elsewhere, reached over CDP"""

    name = "remote"

    def __init__(self, endpoint: str, timeout_ms: int = 30000):
        self.endpoint = endpoint
        self.timeout_ms = timeout_ms

    async def _connect(self, playwright: Playwright) -> Browser:
        return await playwright.chromium.connect_over_cdp(self.endpoint, timeout=self.timeout_ms)


def select_launcher(settings: Settings) -> SessionLauncher:
    """Pick the launcher for this deployment; called once at startup"""
    mode = settings.BROWSER_MODE.lower()
    if mode == "remote":
        if not settings.CHROMIUM_CDP_ENDPOINT:
            raise ValueError("BROWSER_MODE=remote requires CHROMIUM_CDP_ENDPOINT")
        launcher = RemoteChromiumLauncher(settings.CHROMIUM_CDP_ENDPOINT)
    elif mode == "packaged":
        launcher = PackagedChromiumLauncher(settings.CHROMIUM_EXECUTABLE_PATH)
    elif mode == "local":
        launcher = LocalChromiumLauncher()
    else:
        raise ValueError(f"Unknown BROWSER_MODE: {settings.BROWSER_MODE!r}")
    logger.info("Using %s browser launcher", launcher.name)
    return launcher


async def close_session(session) -> None:
    """Close a session, logging teardown failures instead of raising them"""
    try:
        await session.close()
    except Exception as e:
        logger.warning("Session teardown failed: %s", e)


@asynccontextmanager
async def open_session(launcher: SessionLauncher, options: SessionOptions) -> AsyncIterator[PlaywrightSession]:
    """Scoped session: always closed, and closing never masks the body's error"""
    try:
        session = await launcher.launch(options)
    except Exception as e:
        raise SessionError(f"Failed to launch browser: {e}", cause=e) from e
    try:
        yield session
    finally:
        await close_session(session)
