"""
Browser Session for the Cursor-Paged Listing Source

The browser source only answers requests issued from a warmed-up page, so
requests are executed with page.evaluate() inside one shared Playwright page.

The session is a single scarce resource per process:
- opened lazily on first use
- health-checked before every use with a trivial evaluate
- closed and recreated when the check fails, up to a retry limit, after
  which SessionUnavailableError aborts the run
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import async_playwright

from harvest_config import get_config
from harvest_config.collector_config import BrowserSettings
from .errors import SessionUnavailableError, TransientSourceError

logger = logging.getLogger(__name__)

Launcher = Callable[[], Awaitable[Any]]


class BrowserSession:
    """Lazily opened, self-healing Playwright page"""

    def __init__(
        self,
        settings: Optional[BrowserSettings] = None,
        launcher: Optional[Launcher] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.settings = settings or get_config().browser
        self._launcher = launcher
        self._sleep = sleep or asyncio.sleep

        self._playwright = None
        self._browser = None
        self._page = None
        self.opened_count = 0

    @property
    def is_open(self) -> bool:
        return self._page is not None

    async def _launch(self):
        if self._launcher is not None:
            return await self._launcher()
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.settings.headless,
            args=self.settings.launch_args
        )

    async def _open(self) -> None:
        logger.info("Opening browser session...")
        self._browser = await self._launch()
        context = await self._browser.new_context()
        page = await context.new_page()
        page.set_default_navigation_timeout(self.settings.navigation_timeout)
        await page.goto(self.settings.warmup_url, wait_until='domcontentloaded')
        await self._sleep(self.settings.warmup_wait)
        self._page = page
        self.opened_count += 1
        logger.info("Browser session ready")

    async def _healthy(self) -> bool:
        try:
            await self._page.evaluate("() => 1")
            return True
        except Exception as e:
            logger.warning(f"Browser session health check failed: {e}")
            return False

    async def ensure(self):
        """Return a live page, opening or recreating the session as needed"""
        if self._page is not None and await self._healthy():
            return self._page

        last_error = None
        for attempt in range(1, self.settings.max_recreate_attempts + 1):
            await self._close_browser()
            try:
                await self._open()
                return self._page
            except Exception as e:
                last_error = e
                logger.warning(f"Browser session open attempt {attempt}/"
                               f"{self.settings.max_recreate_attempts} failed: {e}")

        raise SessionUnavailableError(
            f"Could not establish browser session after "
            f"{self.settings.max_recreate_attempts} attempts: {last_error}"
        )

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """
        Run a script in the session page.

        Raises:
            SessionUnavailableError: the session could not be (re)established
            TransientSourceError: the page died mid-call; the next call recreates it
        """
        page = await self.ensure()
        try:
            if arg is None:
                return await page.evaluate(script)
            return await page.evaluate(script, arg)
        except Exception as e:
            self._page = None
            raise TransientSourceError(f"Browser evaluate failed: {e}") from e

    async def _close_browser(self) -> None:
        browser, self._browser, self._page = self._browser, None, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing browser: {e}")
        if self._playwright is not None:
            playwright, self._playwright = self._playwright, None
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Ignoring error while stopping playwright: {e}")

    async def close(self) -> None:
        await self._close_browser()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
