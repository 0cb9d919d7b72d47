import asyncio
import gzip
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field

import httpx
from bs4 import BeautifulSoup
from robotexclusionrulesparser import RobotExclusionRulesParser
from sqlalchemy.ext.asyncio import AsyncSession

from domaincrawl.services.frontier import enroll

logger = logging.getLogger(__name__)

MAX_SITEMAP_NESTING = 2
GZIP_MAGIC = b"\x1f\x8b"


class SitemapError(Exception):
    """A sitemap document could not be fetched or parsed."""


@dataclass
class RobotsPolicy:
    parser: RobotExclusionRulesParser
    user_agent: str
    sitemaps: list[str] = field(default_factory=list)

    def allows(self, url: str) -> bool:
        return self.parser.is_allowed(self.user_agent, url)


def sitemap_urls_from_robots(robots_txt: str) -> list[str]:
    """Extract Sitemap: directives from robots.txt."""
    urls = []
    for line in robots_txt.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("sitemap:"):
            url = stripped[len("sitemap:"):].strip()
            if url:
                urls.append(url)
    return urls


def collect_seed_sitemaps(root_url: str, policy: RobotsPolicy | None) -> list[str]:
    """The root URL always comes first, followed by sitemaps declared in robots.txt."""
    sitemaps = [root_url]
    if policy is not None:
        for url in policy.sitemaps:
            if url not in sitemaps:
                sitemaps.append(url)
    return sitemaps


class SeedDiscoverer:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        user_agent: str,
        robots_attempts: int = 3,
        robots_retry_delay: float = 20.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.user_agent = user_agent
        self.robots_attempts = robots_attempts
        self.robots_retry_delay = robots_retry_delay
        self._sleep = sleep

    async def fetch_robots(self, root_url: str) -> RobotsPolicy | None:
        robots_url = f"{root_url.rstrip('/')}/robots.txt"

        for attempt in range(1, self.robots_attempts + 1):
            try:
                resp = await self.client.get(robots_url)
                if 200 <= resp.status_code <= 299:
                    break
                reason = f"HTTP {resp.status_code}"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                reason = str(exc) or exc.__class__.__name__

            logger.warning(
                "Failed to load %s (attempt %s/%s): %s",
                robots_url,
                attempt,
                self.robots_attempts,
                reason,
            )
            if attempt < self.robots_attempts:
                await self._sleep(self.robots_retry_delay)
        else:
            logger.warning("Giving up on %s; crawling without robots rules", robots_url)
            return None

        logger.info("Processing robots: %s", robots_url)
        parser = RobotExclusionRulesParser()
        parser.parse(resp.text)
        return RobotsPolicy(
            parser=parser,
            user_agent=self.user_agent,
            sitemaps=sitemap_urls_from_robots(resp.text),
        )

    async def fetch_sitemap(self, sitemap_url: str) -> list[str]:
        """Return every page URL listed by a sitemap, following sitemap indexes."""
        urls: list[str] = []
        await self._parse_sitemap(sitemap_url, urls, depth=0)
        return urls

    async def _parse_sitemap(self, sitemap_url: str, urls: list[str], depth: int) -> None:
        try:
            resp = await self.client.get(sitemap_url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise SitemapError(f"Unable to fetch {sitemap_url}: {exc}") from exc
        if not 200 <= resp.status_code <= 299:
            raise SitemapError(f"HTTP {resp.status_code} for {sitemap_url}")

        content = resp.content
        if content[:2] == GZIP_MAGIC:
            try:
                content = gzip.decompress(content)
            except (OSError, EOFError) as exc:
                raise SitemapError(f"Corrupt gzip sitemap {sitemap_url}: {exc}") from exc

        try:
            soup = BeautifulSoup(content, "lxml-xml")
        except Exception as exc:
            raise SitemapError(f"Unparseable sitemap {sitemap_url}: {exc}") from exc

        # Handle sitemap index (nested sitemaps)
        sub_sitemaps = soup.find_all("sitemap")
        if sub_sitemaps:
            if depth >= MAX_SITEMAP_NESTING:
                logger.info("Sitemap index %s nested too deep; ignoring", sitemap_url)
                return
            for sm in sub_sitemaps:
                loc = sm.find("loc")
                if not loc:
                    continue
                try:
                    await self._parse_sitemap(loc.get_text(strip=True), urls, depth + 1)
                except SitemapError as exc:
                    logger.warning("Skipping nested sitemap: %s", exc)
            return

        for loc in soup.find_all("loc"):
            url = loc.get_text(strip=True)
            if url:
                urls.append(url)

    async def iter_sitemap_urls(
        self, sitemaps: Iterable[str]
    ) -> AsyncIterator[tuple[str, list[str]]]:
        """Yield ``(sitemap, urls)`` pairs; a broken sitemap yields no URLs."""
        for sitemap_url in sitemaps:
            logger.info("Sitemap: %s", sitemap_url)
            try:
                urls = await self.fetch_sitemap(sitemap_url)
            except SitemapError as exc:
                logger.warning("Error processing sitemap %s, skipping: %s", sitemap_url, exc)
                urls = []
            yield sitemap_url, urls

    async def seed_from_sitemaps(
        self, db: AsyncSession, crawler_id: int, sitemaps: Iterable[str]
    ) -> int:
        """Enroll sitemap URLs at level 1. Returns how many URLs were offered."""
        skip: frozenset[str] = frozenset()
        offered = 0
        async for sitemap_url, urls in self.iter_sitemap_urls(sitemaps):
            if not urls:
                continue
            offered += len(urls)
            skip = await enroll(
                db,
                urls,
                parent_level=0,
                origin=sitemap_url,
                crawler_id=crawler_id,
                skip=skip,
            )
        return offered
