import asyncio

import pytest
from sqlalchemy import select

from conftest import ROOT
from domaincrawl.models import Link
from domaincrawl.services.frontier import (
    FAILED_STATUS,
    FRESH_STATUS,
    PROCESSED_STATUS,
    PROCESSING_STATUS,
    SKIPPED_STATUS,
    claim_link,
    claim_next,
    enroll,
    finish,
    has_remaining,
    status_counts,
)
from domaincrawl.services.job_registry import start_or_resume


async def _links(session_factory, crawler_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Link).where(Link.crawler_id == crawler_id).order_by(Link.id)
        )
        return list(result.scalars())


def test_enroll_dedups_batch_and_known_urls(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)

            async with sessions() as db:
                skip = await enroll(
                    db,
                    [f"{ROOT}/a", f"{ROOT}/a", f"{ROOT}/b", ROOT],
                    parent_level=0,
                    origin=ROOT,
                    crawler_id=handle.job_id,
                )
                await db.commit()
            assert skip == {ROOT, f"{ROOT}/a", f"{ROOT}/b"}

            async with sessions() as db:
                # Without the skip set the existence check still filters known URLs.
                await enroll(
                    db,
                    [f"{ROOT}/b", f"{ROOT}/c"],
                    parent_level=1,
                    origin=f"{ROOT}/a",
                    crawler_id=handle.job_id,
                )
                await db.commit()

            links = await _links(sessions, handle.job_id)
            assert [link.path for link in links] == [ROOT, f"{ROOT}/a", f"{ROOT}/b", f"{ROOT}/c"]
            assert [link.level for link in links] == [0, 1, 1, 2]
            assert links[3].origin == f"{ROOT}/a"
            assert all(link.status == FRESH_STATUS for link in links)

    asyncio.run(_run())


def test_enroll_skip_set_short_circuits(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)
            async with sessions() as db:
                skip = await enroll(
                    db,
                    [f"{ROOT}/x"],
                    parent_level=3,
                    origin=ROOT,
                    crawler_id=handle.job_id,
                    skip=frozenset({f"{ROOT}/x"}),
                )
                await db.commit()
            assert skip == {f"{ROOT}/x"}
            assert [link.path for link in await _links(sessions, handle.job_id)] == [ROOT]

    asyncio.run(_run())


def test_claim_link_only_once(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)
            root = (await _links(sessions, handle.job_id))[0]

            async with sessions() as db:
                assert await claim_link(db, root.id) is True
            async with sessions() as db:
                assert await claim_link(db, root.id) is False

            root = (await _links(sessions, handle.job_id))[0]
            assert root.status == PROCESSING_STATUS
            assert await has_remaining(sessions, handle.job_id) is False

    asyncio.run(_run())


def test_concurrent_claims_have_one_winner(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)
            root = (await _links(sessions, handle.job_id))[0]

            async def _claim():
                async with sessions() as db:
                    return await claim_link(db, root.id)

            results = await asyncio.gather(_claim(), _claim(), _claim())
            assert sorted(results) == [False, False, True]

    asyncio.run(_run())


def test_claim_next_takes_lowest_fresh_id(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)
            async with sessions() as db:
                await enroll(
                    db, [f"{ROOT}/a"], parent_level=0, origin=ROOT, crawler_id=handle.job_id
                )
                await db.commit()

            first = await claim_next(sessions, handle.job_id)
            second = await claim_next(sessions, handle.job_id)
            assert (first.path, first.status) == (ROOT, PROCESSING_STATUS)
            assert second.path == f"{ROOT}/a"
            assert await claim_next(sessions, handle.job_id) is None

    asyncio.run(_run())


def test_finish_keeps_first_terminal_outcome(open_database):
    async def _run():
        async with open_database() as sessions:
            handle = await start_or_resume(sessions, ROOT)
            link = await claim_next(sessions, handle.job_id)

            assert await finish(sessions, link.id, PROCESSED_STATUS) is True
            assert await finish(sessions, link.id, PROCESSED_STATUS) is True
            assert await finish(sessions, link.id, FAILED_STATUS) is False
            assert await finish(sessions, link.id, SKIPPED_STATUS) is False

            async with sessions() as db:
                counts = await status_counts(db, handle.job_id)
            assert counts == {
                FRESH_STATUS: 0,
                PROCESSING_STATUS: 0,
                PROCESSED_STATUS: 1,
                FAILED_STATUS: 0,
                SKIPPED_STATUS: 0,
            }

    asyncio.run(_run())


def test_finish_rejects_non_terminal_outcome(open_database):
    async def _run():
        async with open_database() as sessions:
            with pytest.raises(ValueError):
                await finish(sessions, 1, FRESH_STATUS)

    asyncio.run(_run())
