"""Normalization of ingest sources and extracted catalog items."""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any
from urllib.parse import urlsplit

from .models import ImageSource, IngestSource, PdfSource, UrlSource, dump_sources

StoragePathResolver = Callable[[str], str | None]

SUPPORTED_CURRENCIES = ("TRY", "EUR", "GBP", "USD")
_CURRENCY_MARKERS = (
    ("TRY", ("₺", "TL", "LIRA")),
    ("EUR", ("€", "EURO")),
    ("GBP", ("£", "POUND", "STERLING")),
    ("USD", ("$", "DOLLAR")),
)
_NON_NUMERIC = re.compile(r"[^0-9.]")


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_sources(
    raw: Iterable[Any],
    *,
    storage_path_from_url: StoragePathResolver | None = None,
) -> list[IngestSource]:
    """Coerce caller supplied sources into url/pdf/image sources.

    PDF and image entries given only as URLs become storage sources when the
    URL points at our object storage, and plain URL sources otherwise so that
    the fetcher can sniff the content type. Unknown or empty entries are
    dropped.
    """

    sources: list[IngestSource] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            continue
        kind = entry.get("type")
        url = _clean(entry.get("url"))
        if kind == "url":
            if url:
                sources.append(UrlSource(url=url))
            continue
        if kind not in ("pdf", "image"):
            continue

        storage_path = _clean(entry.get("storagePath")) or _clean(entry.get("storage_path"))
        if storage_path is None and url and storage_path_from_url is not None:
            storage_path = storage_path_from_url(url)
        if storage_path:
            model = PdfSource if kind == "pdf" else ImageSource
            sources.append(model(storage_path=storage_path))
        elif url:
            sources.append(UrlSource(url=url))
    return sources


def idempotency_key(
    tenant_id: str, target_id: str, kind: str, sources: Sequence[IngestSource]
) -> str:
    canonical = json.dumps(dump_sources(list(sources)), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(f"{tenant_id}:{target_id}:{kind}:{canonical}".encode()).hexdigest()


def item_id(
    kind: str,
    name: str,
    price: float | None,
    currency: str | None,
    category: str | None,
) -> str:
    """Deterministic 20 character id so re-applying a proposal updates in place."""

    price_part = "" if price is None else _format_number(price)
    raw = f"{kind}:{name}:{price_part}:{currency or ''}:{category or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def normalize_price(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        return float(value) if math.isfinite(value) and value >= 0 else 0.0
    if isinstance(value, str):
        digits = _NON_NUMERIC.sub("", value)
        try:
            parsed = float(digits)
        except ValueError:
            return 0.0
        return parsed if math.isfinite(parsed) else 0.0
    return 0.0


def normalize_currency(value: Any, default: str = "TRY") -> str:
    if not isinstance(value, str):
        return default
    code = value.strip().upper()
    if code in SUPPORTED_CURRENCIES:
        return code
    for currency, markers in _CURRENCY_MARKERS:
        if any(marker in code for marker in markers):
            return currency
    return default


def source_image_url(sources: Iterable[Mapping[str, Any]]) -> str | None:
    """Return the first http(s) URL among proposal sources, if any."""

    for source in sources:
        url = source.get("url")
        if isinstance(url, str) and urlsplit(url).scheme in ("http", "https"):
            return url
    return None


def normalize_catalog_item(
    item: Mapping[str, Any],
    index: int,
    kind: str,
    *,
    image_url: str | None = None,
    default_currency: str = "TRY",
) -> dict[str, Any]:
    name = _clean(item.get("name")) or "Unnamed Item"
    price = normalize_price(item.get("price"))
    currency = normalize_currency(item.get("currency"), default_currency)
    category = _clean(item.get("category"))

    own_image = item.get("image_url") or item.get("imageUrl")
    if isinstance(own_image, str) and own_image.startswith("http"):
        image_url = own_image

    return {
        "id": item.get("id") or item_id(kind, name, price, currency, category),
        "name": name,
        "description": _clean(item.get("description")) or "",
        "price": price,
        "currency": currency,
        "category": category,
        "available": item.get("available") is not False,
        "image_url": image_url,
        "sort_order": index,
    }
