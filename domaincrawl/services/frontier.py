"""Durable link frontier for a crawl job.

Every status change on a link goes through a conditional UPDATE filtered on
the link's current status, so concurrent claimers never share a link and
terminal links never move again.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domaincrawl.models import Link

logger = logging.getLogger(__name__)

FRESH_STATUS = "fresh"
PROCESSING_STATUS = "processing"
PROCESSED_STATUS = "processed"
FAILED_STATUS = "failed"
SKIPPED_STATUS = "skipped"
TERMINAL_STATUSES = (PROCESSED_STATUS, FAILED_STATUS, SKIPPED_STATUS)
LINK_STATUSES = (FRESH_STATUS, PROCESSING_STATUS, *TERMINAL_STATUSES)

_EXISTENCE_CHUNK = 500


async def enroll(
    db: AsyncSession,
    candidate_urls: Iterable[str],
    *,
    parent_level: int,
    origin: str,
    crawler_id: int,
    skip: frozenset[str] = frozenset(),
) -> frozenset[str]:
    """Register newly discovered URLs as fresh links one level below the parent.

    URLs already known to this job, or present in ``skip``, are left alone.
    Returns ``skip`` extended with this batch so callers can thread it through
    subsequent calls and avoid repeated existence checks. The caller commits.
    """
    batch = frozenset(candidate_urls)
    to_check = sorted(batch - skip)
    if not to_check:
        return skip | batch

    existing: set[str] = set()
    for start in range(0, len(to_check), _EXISTENCE_CHUNK):
        chunk = to_check[start : start + _EXISTENCE_CHUNK]
        result = await db.execute(
            select(Link.path)
            .where(Link.crawler_id == crawler_id)
            .where(Link.path.in_(chunk))
        )
        existing.update(result.scalars().all())

    level = parent_level + 1
    created = 0
    for url in to_check:
        if url in existing:
            continue
        db.add(
            Link(
                path=url,
                status=FRESH_STATUS,
                level=level,
                origin=origin,
                crawler_id=crawler_id,
            )
        )
        created += 1
    await db.flush()

    logger.debug(
        "Enrolled %s/%s links at level=%s origin=%s crawler=%s",
        created,
        len(batch),
        level,
        origin,
        crawler_id,
    )
    return skip | batch


async def claim_link(db: AsyncSession, link_id: int) -> bool:
    """Move a link from fresh to processing; False when someone else got it first."""
    result = await db.execute(
        update(Link)
        .where(Link.id == link_id)
        .where(Link.status == FRESH_STATUS)
        .values(status=PROCESSING_STATUS)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    await db.commit()
    return claimed


async def claim_next(
    session_factory: async_sessionmaker[AsyncSession], crawler_id: int
) -> Link | None:
    async with session_factory() as db:
        result = await db.execute(
            select(Link.id)
            .where(Link.crawler_id == crawler_id)
            .where(Link.status == FRESH_STATUS)
            .order_by(Link.id.asc())
            .limit(1)
        )
        link_id = result.scalar_one_or_none()
        if link_id is None:
            return None

        if not await claim_link(db, link_id):
            logger.info("Lost claim race for link=%s crawler=%s", link_id, crawler_id)
            return None

        return await db.get(Link, link_id)


async def finish(
    session_factory: async_sessionmaker[AsyncSession], link_id: int, outcome: str
) -> bool:
    """Record the terminal outcome of a link.

    Repeating the same outcome is harmless. A link that already reached a
    different terminal status is left untouched and False is returned.
    """
    if outcome not in TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal link status: {outcome!r}")

    async with session_factory() as db:
        result = await db.execute(
            update(Link)
            .where(Link.id == link_id)
            .where(Link.status.in_((FRESH_STATUS, PROCESSING_STATUS, outcome)))
            .values(status=outcome)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount == 1
        await db.commit()

    if not updated:
        logger.warning("Link=%s already finished; refusing to mark it %s", link_id, outcome)
        return False
    return True


async def has_remaining(
    session_factory: async_sessionmaker[AsyncSession], crawler_id: int
) -> bool:
    async with session_factory() as db:
        result = await db.execute(
            select(func.count(Link.id))
            .where(Link.crawler_id == crawler_id)
            .where(Link.status == FRESH_STATUS)
        )
        return result.scalar_one() > 0


async def status_counts(db: AsyncSession, crawler_id: int) -> dict[str, int]:
    result = await db.execute(
        select(Link.status, func.count(Link.id))
        .where(Link.crawler_id == crawler_id)
        .group_by(Link.status)
    )
    counts = dict.fromkeys(LINK_STATUSES, 0)
    counts.update({status: count for status, count in result.all()})
    return counts
