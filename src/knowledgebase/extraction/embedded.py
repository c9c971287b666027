"""Embedded-data tier and page classification heuristics.

Server-rendered single page apps often ship their catalog as JSON inside the
HTML (framework hydration state or JSON-LD). This module pulls those payloads
out with a lenient parser, finds product-like arrays and renders them as
numbered text. It also detects bot challenges and client-rendered shells.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup

from .models import ExtractionOutcome, ExtractionResult
from .static import normalize_whitespace

logger = logging.getLogger(__name__)

MAX_EMBEDDED_JSON_CHARS = 2_000_000
MAX_SEARCH_DEPTH = 10

_NAME_KEYS = ("name", "title", "productName", "itemName")
_PRICE_KEYS = ("price", "prices", "priceInfo", "unitPrice")
_TRAILING_OBJECT_COMMA = re.compile(r",\s*}")
_TRAILING_ARRAY_COMMA = re.compile(r",\s*]")


@dataclass(slots=True, frozen=True)
class _Pattern:
    name: str
    selector: str | None = None
    regex: re.Pattern[str] | None = None


def _window_state(name: str) -> re.Pattern[str]:
    return re.compile(
        rf"window\.{name}\s*=\s*(\{{[\s\S]*?\}});?\s*</script>",
    )


EMBEDDED_PATTERNS: tuple[_Pattern, ...] = (
    _Pattern("next_data", selector="script#__NEXT_DATA__"),
    _Pattern("nuxt_data", regex=_window_state("__NUXT__")),
    _Pattern("apollo_state", regex=_window_state("__APOLLO_STATE__")),
    _Pattern("initial_state", regex=_window_state("__INITIAL_STATE__")),
    _Pattern("preloaded_state", regex=_window_state("__PRELOADED_STATE__")),
    _Pattern("redux_state", regex=_window_state("__REDUX_STATE__")),
    _Pattern("json_ld", selector='script[type="application/ld+json"]'),
)

_CHALLENGE_MARKERS = ("cf-turnstile", "challenge-running", "cf-challenge")
_CAPTCHA_MARKERS = ("captcha", "recaptcha", "hcaptcha")
_CAPTCHA_PAGE_MAX_CHARS = 1_000


def parse_lenient_json(raw: str) -> Any | None:
    """Parse JSON tolerating trailing commas; return ``None`` when unusable."""

    candidate = raw.strip()
    if not candidate or len(candidate) > MAX_EMBEDDED_JSON_CHARS:
        return None
    try:
        return json.loads(candidate)
    except (ValueError, RecursionError):
        pass
    repaired = _TRAILING_ARRAY_COMMA.sub("]", _TRAILING_OBJECT_COMMA.sub("}", candidate))
    try:
        return json.loads(repaired)
    except (ValueError, RecursionError):
        return None


def _has_name(item: Any) -> bool:
    return isinstance(item, dict) and any(item.get(key) for key in _NAME_KEYS)


def _has_price(item: dict[str, Any]) -> bool:
    return item.get("price") is not None or any(item.get(key) for key in _PRICE_KEYS[1:])


def find_product_arrays(value: Any, depth: int = 0) -> list[dict[str, Any]]:
    """Collect product-like objects from arbitrarily nested JSON.

    An array qualifies when at least one element has a name-like and a
    price-like key; every named element of a qualifying array is kept.
    """

    if depth > MAX_SEARCH_DEPTH or not isinstance(value, dict | list):
        return []

    results: list[dict[str, Any]] = []
    if isinstance(value, list):
        if any(_has_name(item) and _has_price(item) for item in value):
            results.extend(item for item in value if _has_name(item))
        children: Iterable[Any] = value
    else:
        children = value.values()

    for child in children:
        if isinstance(child, dict | list):
            results.extend(find_product_arrays(child, depth + 1))
    return results


def _scalar_price(value: Any) -> Any:
    if isinstance(value, dict):
        for key in ("amount", "value", "price", "formatted"):
            if value.get(key) is not None:
                return _scalar_price(value[key])
        return None
    if isinstance(value, list):
        return _scalar_price(value[0]) if value else None
    return value


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _product_from_object(item: dict[str, Any]) -> dict[str, Any]:
    name = next((item[key] for key in _NAME_KEYS if item.get(key)), None)
    price = next(
        (_scalar_price(item[key]) for key in _PRICE_KEYS if item.get(key) is not None),
        None,
    )
    category = item.get("category")
    if isinstance(category, dict):
        category = category.get("name")
    return {
        "name": str(name) if name is not None else None,
        "description": item.get("description"),
        "price": price,
        "currency": item.get("currency") or item.get("priceCurrency"),
        "category": category,
        "image_url": _first(item.get("image") or item.get("imageUrl")),
    }


def _types_of(schema: dict[str, Any]) -> set[str]:
    declared = schema.get("@type")
    if isinstance(declared, list):
        return {str(entry) for entry in declared}
    return {str(declared)} if declared else set()


def _offer_fields(node: dict[str, Any]) -> tuple[Any, Any]:
    offers = _first(node.get("offers"))
    if isinstance(offers, dict):
        return offers.get("price"), offers.get("priceCurrency")
    return node.get("price"), node.get("priceCurrency")


def _json_ld_item(node: dict[str, Any], category: Any = None) -> dict[str, Any]:
    price, currency = _offer_fields(node)
    return {
        "name": node.get("name"),
        "description": node.get("description"),
        "price": price,
        "currency": currency,
        "category": category if category is not None else node.get("category"),
        "image_url": _first(node.get("image")),
    }


def extract_from_json_ld(schemas: Iterable[Any], depth: int = 0) -> list[dict[str, Any]]:
    """Map schema.org Product, MenuItem, ItemList, Menu and Restaurant nodes to items."""

    if depth > MAX_SEARCH_DEPTH:
        return []

    items: list[dict[str, Any]] = []
    for schema in schemas:
        if not isinstance(schema, dict):
            continue
        types = _types_of(schema)

        if isinstance(schema.get("@graph"), list):
            items.extend(extract_from_json_ld(schema["@graph"], depth + 1))

        if types & {"Product", "MenuItem"}:
            items.append(_json_ld_item(schema))

        if "ItemList" in types:
            for element in schema.get("itemListElement") or []:
                if isinstance(element, dict) and isinstance(element.get("item"), dict):
                    items.append(_json_ld_item(element["item"]))

        if "Menu" in types or "MenuSection" in types:
            sections = schema.get("hasMenuSection") or []
            for section in sections if isinstance(sections, list) else [sections]:
                if not isinstance(section, dict):
                    continue
                for menu_item in section.get("hasMenuItem") or []:
                    if isinstance(menu_item, dict):
                        items.append(_json_ld_item(menu_item, category=section.get("name")))
            for menu_item in schema.get("hasMenuItem") or []:
                if isinstance(menu_item, dict):
                    items.append(_json_ld_item(menu_item, category=schema.get("name")))

        if "Restaurant" in types and schema.get("hasMenu"):
            menus = schema["hasMenu"]
            items.extend(
                extract_from_json_ld(menus if isinstance(menus, list) else [menus], depth + 1)
            )

    return [item for item in items if item.get("name")]


def render_items(items: Iterable[dict[str, Any]]) -> str:
    """Render items as numbered blocks for downstream chunking or generation."""

    blocks: list[str] = []
    for index, item in enumerate(items, start=1):
        lines = [f"{index}. {item.get('name') or 'Unknown'}"]
        if item.get("description"):
            lines.append(f"   {item['description']}")
        if item.get("price") is not None:
            currency = item.get("currency")
            price = f"{currency} {item['price']}" if currency else str(item["price"])
            lines.append(f"   Price: {price}")
        if item.get("category"):
            lines.append(f"   Category: {item['category']}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _json_ld_payloads(soup: BeautifulSoup) -> list[Any]:
    payloads: list[Any] = []
    for script in soup.select('script[type="application/ld+json"]'):
        parsed = parse_lenient_json(script.string or script.get_text() or "")
        if isinstance(parsed, list):
            payloads.extend(parsed)
        elif parsed is not None:
            payloads.append(parsed)
    return payloads


def extract_embedded(html: str, soup: BeautifulSoup) -> ExtractionResult | None:
    """Return an ``embedded_json_ok`` result for the first pattern that yields items."""

    for pattern in EMBEDDED_PATTERNS:
        if pattern.name == "json_ld":
            payloads = _json_ld_payloads(soup)
            if not payloads:
                continue
            items = extract_from_json_ld(payloads)
            low_confidence = sum(1 for item in items if item.get("price") is None)
        else:
            raw = ""
            if pattern.selector is not None:
                node = soup.select_one(pattern.selector)
                raw = (node.string or node.get_text()) if node is not None else ""
            elif pattern.regex is not None:
                match = pattern.regex.search(html)
                raw = match.group(1) if match else ""
            if not raw:
                continue
            parsed = parse_lenient_json(raw)
            if parsed is None:
                logger.debug("embedded payload not parseable", extra={"pattern": pattern.name})
                continue
            found = find_product_arrays(parsed)
            low_confidence = sum(1 for item in found if not _has_price(item))
            items = [_product_from_object(item) for item in found]

        if not items:
            continue

        if low_confidence:
            logger.info(
                "embedded items without price",
                extra={"pattern": pattern.name, "count": low_confidence, "total": len(items)},
            )
        logger.info(
            "extracted embedded catalog data",
            extra={"pattern": pattern.name, "item_count": len(items)},
        )
        return ExtractionResult(
            outcome=ExtractionOutcome.EMBEDDED_JSON_OK,
            text=render_items(items),
            items=items,
            source=pattern.name,
            low_confidence=low_confidence,
        )
    return None


def detect_blocking(
    html: str, status_code: int, *, visible_chars: int | None = None
) -> ExtractionOutcome | None:
    """Classify access-denied, rate-limit and bot-challenge responses.

    Generic CAPTCHA markers only count on pages with little visible text so
    that a normal page embedding a CAPTCHA widget is not treated as blocked.
    """

    if status_code == 403:
        return ExtractionOutcome.BLOCKED_403
    if status_code == 429:
        return ExtractionOutcome.RATE_LIMITED_429

    lowered = html.lower()
    if any(marker in lowered for marker in _CHALLENGE_MARKERS):
        return ExtractionOutcome.CAPTCHA_CHALLENGE
    if "cloudflare" in lowered and (
        "checking your browser" in lowered or "ray id" in lowered
    ):
        return ExtractionOutcome.CAPTCHA_CHALLENGE

    short_page = visible_chars is None or visible_chars < _CAPTCHA_PAGE_MAX_CHARS
    if short_page and any(marker in lowered for marker in _CAPTCHA_MARKERS):
        return ExtractionOutcome.CAPTCHA_CHALLENGE
    return None


def body_text(soup: BeautifulSoup) -> str:
    """Return single-spaced body text without scripts, styles or metadata."""

    clone = BeautifulSoup(str(soup), "html.parser")
    for tag in clone.find_all(["script", "style", "meta", "link", "noscript"]):
        tag.decompose()
    root = clone.body or clone
    return " ".join(normalize_whitespace(root.get_text(" ")).split())


def detect_spa_shell(soup: BeautifulSoup) -> bool:
    """Return True when at least two client-rendered shell indicators hold."""

    text = body_text(soup)
    length = len(text)
    has_app_root = bool(soup.select("div#app, div#root, div#__next, div#__nuxt"))
    indicators = (
        length < 100,
        re.search(r"enable\s*javascript", text, re.IGNORECASE) is not None,
        "loading" in text.lower() and length < 200,
        has_app_root and length < 200,
        len(soup.find_all("script")) > 3 and length < 150,
    )
    return sum(indicators) >= 2
