"""Shared Playwright browser.

One Chromium process serves every page render of the crawl instead of
launching a browser per page. Concurrent renders are capped by a semaphore.
"""

import asyncio
import logging

from playwright.async_api import Browser, Playwright, async_playwright

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 1080}


class BrowserPool:
    def __init__(self, max_pages: int = 1, user_agent: str | None = None):
        self._pw: Playwright | None = None
        self._browser: Browser | None = None
        self._max_pages = max_pages
        self._user_agent = user_agent
        self._sem = asyncio.Semaphore(max_pages)
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None or self._pw is not None:
                logger.info("Browser died, restarting...")
                await self._close_quietly()
            logger.info("Starting headless Chromium (max_pages=%s)", self._max_pages)
            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=True,
                args=[
                    "--no-sandbox",
                    "--disable-gpu",
                    "--disable-dev-shm-usage",
                    "--disable-extensions",
                    "--no-first-run",
                ],
            )
            return self._browser

    async def render(self, url: str, timeout_ms: int = 30_000) -> str:
        """Load ``url`` in a fresh page and return the rendered HTML.

        Playwright errors propagate to the caller.
        """
        async with self._sem:
            browser = await self._ensure_browser()
            page = await browser.new_page(viewport=DEFAULT_VIEWPORT, user_agent=self._user_agent)
            try:
                page.set_default_timeout(timeout_ms)
                page.set_default_navigation_timeout(timeout_ms)
                await page.goto(url, wait_until="load")
                return await page.content()
            finally:
                try:
                    await page.close()
                except Exception:
                    logger.debug("Error closing page for %s", url, exc_info=True)

    async def _close_quietly(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception:
                logger.debug("Error closing browser", exc_info=True)
            self._browser = None
        if self._pw is not None:
            try:
                await self._pw.stop()
            except Exception:
                logger.debug("Error stopping playwright", exc_info=True)
            self._pw = None

    async def shutdown(self) -> None:
        await self._close_quietly()
        logger.info("Headless Chromium shut down")
