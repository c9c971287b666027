"""Static HTML tier: readable text and follow-up link candidates."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .models import LinkCandidate

_BOILERPLATE_TAGS = (
    "script",
    "style",
    "nav",
    "footer",
    "header",
    "aside",
    "noscript",
    "iframe",
    "svg",
    "form",
)
_BOILERPLATE_MARKERS = ("nav", "footer", "header", "sidebar")
_PROTECTED_TAGS = frozenset({"html", "body", "main", "article"})
_CONTENT_SELECTORS = (
    "main",
    "article",
    "[role=main]",
    ".content",
    "#content",
    ".main",
    "#main",
    "body",
)
_MIN_SELECTOR_CHARS = 80

LINK_KEYWORDS = (
    "menu",
    "menus",
    "food",
    "drink",
    "drinks",
    "wine",
    "cocktail",
    "price",
    "prices",
    "pricelist",
    "price-list",
    "services",
    "treatments",
    "spa",
    "salon",
    "packages",
    "catalog",
    "shop",
)
_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp", ".gif")
_SKIPPED_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:")

_SPACES = re.compile(r"[ \t\r\f\v\u00a0]+")
_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(slots=True)
class StaticPage:
    """Text and link candidates extracted from one HTML document."""

    text: str
    title: str = ""
    links: list[LinkCandidate] = field(default_factory=list)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def normalize_whitespace(text: str) -> str:
    lines = (_SPACES.sub(" ", line).strip() for line in text.split("\n"))
    return _BLANK_LINES.sub("\n\n", "\n".join(line for line in lines if line)).strip()


def score_link(href: str, text: str) -> int:
    """Score a link by catalog keywords in its URL or label plus asset bonuses."""

    haystack = f"{href} {text}".lower()
    score = sum(2 for keyword in LINK_KEYWORDS if keyword in haystack)
    path = urlsplit(href).path.lower()
    if path.endswith(".pdf"):
        score += 5
    elif path.endswith(_IMAGE_SUFFIXES):
        score += 3
    return score


def find_link_candidates(
    soup: BeautifulSoup, base_url: str, *, limit: int = 4
) -> list[LinkCandidate]:
    """Return up to ``limit`` same-origin links ranked by :func:`score_link`."""

    if limit <= 0 or not base_url:
        return []

    origin = urlsplit(base_url)
    page_url = urldefrag(base_url)[0]
    seen: dict[str, LinkCandidate] = {}
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href or href.lower().startswith(_SKIPPED_HREF_PREFIXES):
            continue
        absolute = urldefrag(urljoin(base_url, href))[0]
        target = urlsplit(absolute)
        if (target.scheme, target.netloc) != (origin.scheme, origin.netloc):
            continue
        if absolute == page_url:
            continue
        label = anchor.get_text(" ", strip=True)
        score = score_link(absolute, label)
        if score <= 0:
            continue
        current = seen.get(absolute)
        if current is None or current.score < score:
            seen[absolute] = LinkCandidate(url=absolute, score=score, text=label[:120])

    ranked = sorted(seen.values(), key=lambda candidate: candidate.score, reverse=True)
    return ranked[:limit]


def _strip_boilerplate(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(_BOILERPLATE_TAGS):
        tag.decompose()

    marked: list[Tag] = []
    for tag in soup.find_all(True):
        if tag.name in _PROTECTED_TAGS:
            continue
        attributes = " ".join(
            [*(tag.get("class") or []), str(tag.get("id") or "")]
        ).lower()
        if any(marker in attributes for marker in _BOILERPLATE_MARKERS):
            marked.append(tag)
    for tag in marked:
        if not getattr(tag, "decomposed", False):
            tag.decompose()


def extract_static(
    html: str,
    *,
    base_url: str = "",
    max_chars: int = 200_000,
    max_links: int = 4,
) -> StaticPage:
    """Extract the main readable text of ``html``.

    Link candidates are collected before boilerplate removal because catalog
    links usually live in navigation menus.
    """

    soup = parse_html(html)
    title = soup.title.get_text(strip=True) if soup.title else ""
    links = find_link_candidates(soup, base_url, limit=max_links)

    _strip_boilerplate(soup)

    text = ""
    for selector in _CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is None:
            continue
        candidate = normalize_whitespace(node.get_text("\n"))
        if len(candidate) > _MIN_SELECTOR_CHARS:
            text = candidate
            break
    if not text:
        text = normalize_whitespace(soup.get_text("\n"))

    return StaticPage(text=text[:max_chars], title=title, links=links)
