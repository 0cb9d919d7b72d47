import re
from dataclasses import dataclass, field
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

# Only paragraph text belongs to the extracted corpus.
TEXT_TAGS = ("p",)


@dataclass(frozen=True)
class DiscoveredLink:
    url: str
    anchor_text: str


@dataclass(frozen=True)
class TextBlock:
    tag_name: str
    text: str


@dataclass
class PageResult:
    links: list[DiscoveredLink] = field(default_factory=list)
    blocks: list[TextBlock] = field(default_factory=list)


def extract_page(url: str, html: str, *, include_links: bool) -> PageResult:
    soup = BeautifulSoup(html, "lxml")
    return PageResult(
        links=_extract_links(soup, url) if include_links else [],
        blocks=_extract_text_blocks(soup),
    )


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _extract_links(soup: BeautifulSoup, base_url: str) -> list[DiscoveredLink]:
    links: list[DiscoveredLink] = []
    for a in soup.find_all("a", href=True):
        absolute, _fragment = urldefrag(urljoin(base_url, a["href"].strip()))
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        links.append(DiscoveredLink(url=absolute, anchor_text=_normalize_text(a.get_text(" "))))
    return links


def _extract_text_blocks(soup: BeautifulSoup) -> list[TextBlock]:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    container = soup.body or soup
    blocks: list[TextBlock] = []
    for tag in container.find_all(TEXT_TAGS):
        text = _normalize_text(tag.get_text(" "))
        if text:
            blocks.append(TextBlock(tag_name=tag.name.upper(), text=text))
    return blocks
