"""Crawl job bookkeeping and the per-domain job lock.

The lock is the ``status`` column of the job row: winning the conditional
``idle -> processing`` update grants ownership of the domain's frontier.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domaincrawl.models import ROOT_ORIGIN, CrawlJob, Link
from domaincrawl.schemas.crawl import CrawlJobResponse, JobStatusReport, LinkResponse
from domaincrawl.services.frontier import (
    FRESH_STATUS,
    PROCESSING_STATUS as LINK_PROCESSING_STATUS,
    status_counts,
)

logger = logging.getLogger(__name__)

IDLE_STATUS = "idle"
PROCESSING_STATUS = "processing"
IN_FLIGHT_REPORT_LIMIT = 50

OnCreate = Callable[[AsyncSession, CrawlJob], Awaitable[None]]


class AlreadyRunning(Exception):
    """Another process holds the lock for this root URL."""

    def __init__(self, root_url: str):
        super().__init__(f"{root_url} is already being processed")
        self.root_url = root_url


class JobInitializationError(Exception):
    """The crawl job could neither be created nor found."""


@dataclass(frozen=True)
class JobHandle:
    job_id: int
    root_url: str
    created: bool


async def _ensure_job(
    session_factory: async_sessionmaker[AsyncSession],
    root_url: str,
    on_create: OnCreate | None,
) -> bool:
    # A second pass re-reads the row another process inserted concurrently.
    for _ in range(2):
        async with session_factory() as db:
            try:
                result = await db.execute(
                    select(CrawlJob).where(CrawlJob.root_path == root_url)
                )
                if result.scalar_one_or_none() is not None:
                    return False

                job = CrawlJob(root_path=root_url, status=IDLE_STATUS)
                db.add(job)
                await db.flush()
                db.add(
                    Link(
                        path=root_url,
                        status=FRESH_STATUS,
                        level=0,
                        origin=ROOT_ORIGIN,
                        crawler_id=job.id,
                    )
                )
                await db.flush()
                logger.info("Created crawler=%s for %s", job.id, root_url)

                if on_create is not None:
                    await on_create(db, job)
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()
                logger.info("Crawler for %s was created concurrently; reloading", root_url)
    return False


async def _acquire(
    session_factory: async_sessionmaker[AsyncSession], root_url: str
) -> int | None:
    async with session_factory() as db:
        result = await db.execute(
            update(CrawlJob)
            .where(CrawlJob.root_path == root_url)
            .where(CrawlJob.status == IDLE_STATUS)
            .values(status=PROCESSING_STATUS)
            .execution_options(synchronize_session=False)
        )
        acquired = result.rowcount == 1
        await db.commit()

        job_id = (
            await db.execute(select(CrawlJob.id).where(CrawlJob.root_path == root_url))
        ).scalar_one_or_none()

    if job_id is None:
        raise JobInitializationError(f"No crawler row exists for {root_url}")
    return job_id if acquired else None


async def start_or_resume(
    session_factory: async_sessionmaker[AsyncSession],
    root_url: str,
    *,
    on_create: OnCreate | None = None,
) -> JobHandle:
    """Create the job for ``root_url`` if needed and take its lock.

    ``on_create`` runs inside the creation transaction, after the root link has
    been added, and only for the invocation that created the job.
    Raises ``AlreadyRunning`` when another process owns the job.
    """
    created = False
    try:
        created = await _ensure_job(session_factory, root_url, on_create)
    except SQLAlchemyError:
        logger.exception("Unable to initialize crawler for %s", root_url)

    job_id = await _acquire(session_factory, root_url)
    if job_id is None:
        logger.info("An instance is already processing %s", root_url)
        raise AlreadyRunning(root_url)

    logger.info("Acquired crawler=%s for %s (created=%s)", job_id, root_url, created)
    return JobHandle(job_id=job_id, root_url=root_url, created=created)


async def release(session_factory: async_sessionmaker[AsyncSession], job_id: int) -> None:
    async with session_factory() as db:
        await db.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id)
            .values(status=IDLE_STATUS, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    logger.info("Released crawler=%s", job_id)


async def force_release(session_factory: async_sessionmaker[AsyncSession], root_url: str) -> bool:
    """Reset a lock left behind by a crashed process. Links are not touched."""
    async with session_factory() as db:
        result = await db.execute(
            update(CrawlJob)
            .where(CrawlJob.root_path == root_url)
            .where(CrawlJob.status == PROCESSING_STATUS)
            .values(status=IDLE_STATUS)
            .execution_options(synchronize_session=False)
        )
        cleared = result.rowcount == 1
        await db.commit()

    if cleared:
        logger.warning("Forcibly released the lock for %s", root_url)
    return cleared


async def drop_job(session_factory: async_sessionmaker[AsyncSession], root_url: str) -> bool:
    """Delete the job for ``root_url`` and every link it recorded."""
    async with session_factory() as db:
        job = (
            await db.execute(select(CrawlJob).where(CrawlJob.root_path == root_url))
        ).scalar_one_or_none()
        if job is None:
            return False
        if job.status == PROCESSING_STATUS:
            raise AlreadyRunning(root_url)

        result = await db.execute(delete(Link).where(Link.crawler_id == job.id))
        dropped_links = result.rowcount
        await db.execute(delete(CrawlJob).where(CrawlJob.id == job.id))
        await db.commit()

    logger.info("Dropped crawler=%s for %s (%s links)", job.id, root_url, dropped_links)
    return True


async def job_status(
    session_factory: async_sessionmaker[AsyncSession], root_url: str
) -> JobStatusReport | None:
    async with session_factory() as db:
        job = (
            await db.execute(select(CrawlJob).where(CrawlJob.root_path == root_url))
        ).scalar_one_or_none()
        if job is None:
            return None
        counts = await status_counts(db, job.id)
        in_flight = await db.execute(
            select(Link)
            .where(Link.crawler_id == job.id)
            .where(Link.status == LINK_PROCESSING_STATUS)
            .order_by(Link.id.asc())
            .limit(IN_FLIGHT_REPORT_LIMIT)
        )
        return JobStatusReport(
            job=CrawlJobResponse.model_validate(job),
            links=counts,
            total_links=sum(counts.values()),
            in_flight=[LinkResponse.model_validate(link) for link in in_flight.scalars()],
        )
