import contextlib

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from domaincrawl.database import build_sessionmaker, init_models
from domaincrawl.services.extractor import DiscoveredLink, PageResult, TextBlock
from domaincrawl.services.page_fetcher import PageFetchError

ROOT = "https://example.com"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'crawl.db'}"


@pytest.fixture
def open_database(database_url):
    """Async context manager yielding a session factory over a fresh SQLite file."""

    @contextlib.asynccontextmanager
    async def _open():
        engine = create_async_engine(database_url)
        await init_models(engine)
        try:
            yield build_sessionmaker(engine)
        finally:
            await engine.dispose()

    return _open


class FakeFetcher:
    """Serves canned pages keyed by URL."""

    def __init__(self, pages: dict[str, tuple[list[str], list[str]]], failing=()):
        self.pages = pages
        self.failing = set(failing)
        self.fetched: list[tuple[str, int]] = []
        self.closed = False

    async def fetch(self, url: str, level: int, deepest_level: int) -> PageResult:
        self.fetched.append((url, level))
        if url in self.failing:
            raise PageFetchError(f"HTTP 500 for {url}")
        links, paragraphs = self.pages.get(url, ([], []))
        return PageResult(
            links=[DiscoveredLink(url=link, anchor_text="") for link in links] if level < deepest_level else [],
            blocks=[TextBlock(tag_name="P", text=text) for text in paragraphs],
        )

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def mock_client(routes: dict, requests: list[str] | None = None) -> httpx.AsyncClient:
    """AsyncClient answering from ``routes``; unknown URLs get a 404.

    A route is either a bare status code or ``(status, body, content_type)``.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(str(request.url))
        answer = routes.get(str(request.url), 404)
        if isinstance(answer, int):
            return httpx.Response(answer)
        status, body, content_type = answer
        content = body.encode("utf-8") if isinstance(body, str) else body
        return httpx.Response(status, content=content, headers={"content-type": content_type})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
