import asyncio

import httpx
import pytest

from conftest import mock_client
from domaincrawl.services.extractor import TextBlock, extract_page
from domaincrawl.services.page_fetcher import HttpPageFetcher, PageFetchError

PAGE = """
<html>
  <head><title>Home</title><style>p { color: red }</style></head>
  <body>
    <nav><a href="/about#team">About   us</a> <a href="mailto:hi@example.com">Mail</a></nav>
    <p>First
       paragraph</p>
    <p>   </p>
    <div><p>Nested <b>bold</b> text</p></div>
    <noscript><p>Enable JavaScript</p></noscript>
    <a href="https://other.org/page">Elsewhere</a>
    <a href="javascript:void(0)">Nothing</a>
  </body>
</html>
"""


def test_extract_page_links_and_paragraphs():
    result = extract_page("https://example.com/index.html", PAGE, include_links=True)

    assert [link.url for link in result.links] == [
        "https://example.com/about",
        "https://other.org/page",
    ]
    assert result.links[0].anchor_text == "About us"
    assert result.blocks == [
        TextBlock(tag_name="P", text="First paragraph"),
        TextBlock(tag_name="P", text="Nested bold text"),
    ]


def test_extract_page_without_links():
    result = extract_page("https://example.com/", PAGE, include_links=False)
    assert result.links == []
    assert len(result.blocks) == 2


def test_http_fetcher_extracts_html():
    routes = {"https://example.com/": (200, PAGE, "text/html; charset=utf-8")}

    async def _run():
        async with mock_client(routes) as client:
            fetcher = HttpPageFetcher(client)
            deep = await fetcher.fetch("https://example.com/", 0, 1)
            leaf = await fetcher.fetch("https://example.com/", 1, 1)
            await fetcher.close()
        assert len(deep.links) == 2
        assert leaf.links == []
        assert leaf.blocks == deep.blocks

    asyncio.run(_run())


@pytest.mark.parametrize(
    "route",
    [404, (200, b"%PDF-1.7", "application/pdf")],
)
def test_http_fetcher_rejects_unusable_responses(route):
    async def _run():
        async with mock_client({"https://example.com/doc": route}) as client:
            with pytest.raises(PageFetchError):
                await HttpPageFetcher(client).fetch("https://example.com/doc", 0, 1)

    asyncio.run(_run())


def test_http_fetcher_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(PageFetchError):
                await HttpPageFetcher(client).fetch("https://example.com/", 0, 1)

    asyncio.run(_run())
