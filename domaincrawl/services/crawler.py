import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domaincrawl.config import settings
from domaincrawl.models import CrawlJob, Link
from domaincrawl.services.frontier import (
    FAILED_STATUS,
    PROCESSED_STATUS,
    SKIPPED_STATUS,
    claim_next,
    enroll,
    finish,
    has_remaining,
)
from domaincrawl.services.job_registry import release, start_or_resume
from domaincrawl.services.output_sink import OutputSink, TextRecord, utc_timestamp
from domaincrawl.services.page_fetcher import PageFetcher, PageFetchError
from domaincrawl.services.seeds import RobotsPolicy, SeedDiscoverer, collect_seed_sitemaps

logger = logging.getLogger(__name__)


def is_same_domain(root_url: str, url: str) -> bool:
    """True when ``url``'s host ends with the root host.

    This is a plain suffix comparison without a label boundary, so
    ``evil-example.com`` passes for root ``example.com`` as well as real
    subdomains such as ``www.example.com``.
    """
    try:
        root_host = urlparse(root_url).hostname
        host = urlparse(url).hostname
    except ValueError:
        return False
    if not root_host or not host:
        return False
    return host[-len(root_host):] == root_host


@dataclass
class CrawlSummary:
    job_id: int
    created: bool
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    stopped: bool = False

    def record(self, outcome: str) -> None:
        if outcome == PROCESSED_STATUS:
            self.processed += 1
        elif outcome == FAILED_STATUS:
            self.failed += 1
        elif outcome == SKIPPED_STATUS:
            self.skipped += 1


class DomainCrawler:
    def __init__(
        self,
        root_url: str,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: PageFetcher,
        discoverer: SeedDiscoverer,
        sink: OutputSink,
        deepest_level: int = settings.deepest_level,
        try_robots: bool = settings.try_robots,
        try_sitemaps: bool = settings.try_sitemaps,
        politeness_min_ms: int = settings.politeness_min_ms,
        politeness_max_ms: int = settings.politeness_max_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.root_url = root_url.rstrip("/")
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.discoverer = discoverer
        self.sink = sink
        self.deepest_level = deepest_level
        self.try_robots = try_robots
        self.try_sitemaps = try_sitemaps
        self.politeness_min_ms = politeness_min_ms
        self.politeness_max_ms = politeness_max_ms
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.robots: RobotsPolicy | None = None
        self._robots_loaded = False
        self._skip: frozenset[str] = frozenset()
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Stop after the link currently in flight has been finished."""
        self._stop.set()

    async def run(self) -> CrawlSummary:
        """Crawl the domain until its frontier is exhausted.

        Raises ``AlreadyRunning`` if another process owns this domain.
        """
        handle = await start_or_resume(
            self.session_factory, self.root_url, on_create=self._seed
        )
        summary = CrawlSummary(job_id=handle.job_id, created=handle.created)
        try:
            if self.try_robots and not self._robots_loaded:
                await self._load_robots()
            await self._crawl(handle.job_id, summary)
        finally:
            try:
                await self.sink.close()
            finally:
                await release(self.session_factory, handle.job_id)

        logger.info(
            "Crawl of %s finished: processed=%s failed=%s skipped=%s stopped=%s",
            self.root_url,
            summary.processed,
            summary.failed,
            summary.skipped,
            summary.stopped,
        )
        return summary

    async def _load_robots(self) -> None:
        self.robots = await self.discoverer.fetch_robots(self.root_url)
        self._robots_loaded = True

    async def _seed(self, db: AsyncSession, job: CrawlJob) -> None:
        if self.try_robots:
            await self._load_robots()
        if self.try_sitemaps:
            sitemaps = collect_seed_sitemaps(self.root_url, self.robots)
            logger.info("Trying %s sitemap(s) for %s", len(sitemaps), self.root_url)
            offered = await self.discoverer.seed_from_sitemaps(db, job.id, sitemaps)
            logger.info("Sitemaps offered %s URL(s) for crawler=%s", offered, job.id)

    async def _crawl(self, job_id: int, summary: CrawlSummary) -> None:
        while await has_remaining(self.session_factory, job_id):
            if self._stop.is_set():
                summary.stopped = True
                logger.info("Stop requested; leaving the remaining frontier for the next run")
                return

            link = await claim_next(self.session_factory, job_id)
            if link is None:
                # Lost a claim race; the remaining count decides whether to go on.
                continue

            outcome = await self._process(job_id, link)
            summary.record(outcome)
            if outcome != SKIPPED_STATUS:
                await self._sleep(self._politeness_delay())

    def _politeness_delay(self) -> float:
        return self._rng.uniform(self.politeness_min_ms, self.politeness_max_ms) / 1000

    def _gate(self, link: Link) -> str | None:
        if not is_same_domain(self.root_url, link.path):
            return "outside domain"
        if self.robots is not None and not self.robots.allows(link.path):
            return "disallowed by robots.txt"
        return None

    async def _process(self, job_id: int, link: Link) -> str:
        reason = self._gate(link)
        if reason is not None:
            logger.info("Skipping %s: %s", link.path, reason)
            await finish(self.session_factory, link.id, SKIPPED_STATUS)
            return SKIPPED_STATUS

        logger.info("Processing page %s (level=%s)", link.path, link.level)
        fetched_at = utc_timestamp()
        try:
            result = await self.fetcher.fetch(link.path, link.level, self.deepest_level)
        except PageFetchError as exc:
            logger.warning("Unable to process page %s: %s", link.path, exc)
            await finish(self.session_factory, link.id, FAILED_STATUS)
            return FAILED_STATUS
        except Exception:
            logger.exception("Unexpected error fetching %s", link.path)
            await finish(self.session_factory, link.id, FAILED_STATUS)
            return FAILED_STATUS

        if result.links:
            async with self.session_factory() as db:
                skip = await enroll(
                    db,
                    (discovered.url for discovered in result.links),
                    parent_level=link.level,
                    origin=link.path,
                    crawler_id=job_id,
                    skip=self._skip,
                )
                await db.commit()
            self._skip = skip

        for block in result.blocks:
            await self.sink.write(
                TextRecord(
                    tag=block.tag_name,
                    text=block.text,
                    level=link.level,
                    source=link.path,
                    timestamp=fetched_at,
                )
            )

        await finish(self.session_factory, link.id, PROCESSED_STATUS)
        logger.info(
            "Processed %s: %s links, %s text blocks, %s records buffered",
            link.path,
            len(result.links),
            len(result.blocks),
            self.sink.buffered,
        )
        return PROCESSED_STATUS
