from typing import Protocol

import httpx
from playwright.async_api import Error as PlaywrightError

from domaincrawl.services.browser_pool import BrowserPool
from domaincrawl.services.extractor import PageResult, extract_page

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Upgrade-Insecure-Requests": "1",
}


class PageFetchError(Exception):
    """The page could not be loaded or processed."""


class PageFetcher(Protocol):
    async def fetch(self, url: str, level: int, deepest_level: int) -> PageResult:
        """Load ``url``; outgoing links are collected only while ``level < deepest_level``."""
        ...

    async def close(self) -> None:
        ...


class RenderingPageFetcher:
    """Renders pages in headless Chromium so script-built content is included."""

    def __init__(self, pool: BrowserPool, *, timeout_ms: int = 30_000):
        self.pool = pool
        self.timeout_ms = timeout_ms

    async def fetch(self, url: str, level: int, deepest_level: int) -> PageResult:
        try:
            html = await self.pool.render(url, timeout_ms=self.timeout_ms)
        except PlaywrightError as exc:
            raise PageFetchError(f"Render failed for {url}: {exc}") from exc
        return extract_page(url, html, include_links=level < deepest_level)

    async def close(self) -> None:
        await self.pool.shutdown()


class HttpPageFetcher:
    """Plain HTTP fetcher for static sites."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, url: str, level: int, deepest_level: int) -> PageResult:
        try:
            resp = await self.client.get(url, headers=BROWSER_HEADERS)
        except httpx.HTTPError as exc:
            raise PageFetchError(f"Request failed for {url}: {exc}") from exc

        if resp.status_code != 200:
            raise PageFetchError(f"HTTP {resp.status_code} for {url}")
        content_type = resp.headers.get("content-type", "")
        if "html" not in content_type:
            raise PageFetchError(f"Non-HTML ({content_type.split(';')[0].strip()}) at {url}")

        return extract_page(str(resp.url), resp.text, include_links=level < deepest_level)

    async def close(self) -> None:
        # The client is owned by whoever created it.
        return None
