"""Command-line entry point for single-domain crawls."""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domaincrawl.config import Settings
from domaincrawl.database import build_engine, build_sessionmaker, init_models
from domaincrawl.services.browser_pool import BrowserPool
from domaincrawl.services.crawler import DomainCrawler
from domaincrawl.services.job_registry import (
    AlreadyRunning,
    JobInitializationError,
    drop_job,
    force_release,
    job_status,
)
from domaincrawl.services.output_sink import OutputSink
from domaincrawl.services.page_fetcher import HttpPageFetcher, PageFetcher, RenderingPageFetcher
from domaincrawl.services.seeds import SeedDiscoverer

logger = logging.getLogger(__name__)

ACTIONS = ("continue", "clear", "restart", "drop", "status")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="domaincrawl",
        description="Resumable breadth-first crawler for a single web domain",
    )
    parser.add_argument("--root", help="Root URL of the domain to crawl")
    parser.add_argument("--output-dir", type=Path, help="Directory for extracted text dumps")
    parser.add_argument("--depth", type=int, dest="deepest_level", help="Deepest link level to crawl")
    parser.add_argument(
        "--robots",
        dest="try_robots",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Honor robots.txt and use its sitemaps",
    )
    parser.add_argument(
        "--sitemaps",
        dest="try_sitemaps",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Seed the frontier from sitemaps when the job is created",
    )
    parser.add_argument("--fetcher", choices=("render", "http"), help="Page fetching strategy")
    parser.add_argument("--database-url", help="SQLAlchemy async database URL")
    parser.add_argument(
        "--action",
        choices=ACTIONS,
        default="continue",
        help=(
            "continue: crawl; clear: release a lock left by a crashed run, then crawl; "
            "restart: drop the job, then crawl; drop: drop the job; status: print job status"
        ),
    )
    parser.add_argument("--init-db", action="store_true", help="Create tables before running")
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        "root_url": args.root,
        "output_dir": args.output_dir,
        "deepest_level": args.deepest_level,
        "try_robots": args.try_robots,
        "try_sitemaps": args.try_sitemaps,
        "fetcher": args.fetcher,
        "database_url": args.database_url,
    }
    return Settings(**{key: value for key, value in overrides.items() if value is not None})


def build_fetcher(cfg: Settings, client: httpx.AsyncClient) -> PageFetcher:
    if cfg.fetcher == "http":
        return HttpPageFetcher(client)
    if cfg.fetcher == "render":
        pool = BrowserPool(max_pages=1, user_agent=cfg.user_agent)
        return RenderingPageFetcher(pool, timeout_ms=cfg.page_timeout_ms)
    raise ValueError(f"Unknown fetcher {cfg.fetcher!r}")


async def crawl(cfg: Settings, session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with httpx.AsyncClient(
        timeout=cfg.request_timeout_seconds,
        follow_redirects=True,
        http2=True,
        headers={"User-Agent": cfg.user_agent},
    ) as client:
        fetcher = build_fetcher(cfg, client)
        crawler = DomainCrawler(
            cfg.root_url,
            session_factory=session_factory,
            fetcher=fetcher,
            discoverer=SeedDiscoverer(
                client,
                user_agent=cfg.user_agent,
                robots_attempts=cfg.robots_attempts,
                robots_retry_delay=cfg.robots_retry_delay_seconds,
            ),
            sink=OutputSink(cfg.output_dir, cfg.root_url, cfg.output_buffer_size),
            deepest_level=cfg.deepest_level,
            try_robots=cfg.try_robots,
            try_sitemaps=cfg.try_sitemaps,
            politeness_min_ms=cfg.politeness_min_ms,
            politeness_max_ms=cfg.politeness_max_ms,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, crawler.request_stop)
        try:
            await crawler.run()
        except AlreadyRunning:
            logger.info("An instance is processing %s already. Aborting.", cfg.root_url)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await fetcher.close()
    return 0


async def run(args: argparse.Namespace, cfg: Settings) -> int:
    engine = build_engine(cfg.database_url)
    session_factory = build_sessionmaker(engine)
    try:
        if args.init_db:
            await init_models(engine)

        if args.action == "status":
            report = await job_status(session_factory, cfg.root_url)
            if report is None:
                logger.error("No crawl job exists for %s", cfg.root_url)
                return 1
            print(report.model_dump_json(indent=2))
            return 0

        if args.action in ("drop", "restart"):
            try:
                dropped = await drop_job(session_factory, cfg.root_url)
            except AlreadyRunning:
                logger.info("An instance is processing %s already; not dropping it.", cfg.root_url)
                return 0
            logger.info("Dropped job for %s: %s", cfg.root_url, dropped)
            if args.action == "drop":
                return 0

        if args.action == "clear":
            await force_release(session_factory, cfg.root_url)

        return await crawl(cfg, session_factory)
    except JobInitializationError as exc:
        logger.error("Unable to initialize crawling for %s: %s", cfg.root_url, exc)
        return 1
    except SQLAlchemyError:
        logger.exception("Database failure while processing %s", cfg.root_url)
        return 1
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = resolve_settings(args)
    except ValidationError as exc:
        parser.exit(1, f"domaincrawl: invalid configuration: {exc}\n")

    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Suppress per-request httpx logging
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if not cfg.root_url:
        parser.exit(1, "domaincrawl: a root URL is required (--root or ROOT_URL)\n")

    raise SystemExit(asyncio.run(run(args, cfg)))


if __name__ == "__main__":
    main()
