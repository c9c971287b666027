"""Cheapest-first extraction over fetched HTML."""

from __future__ import annotations

import logging

from bs4.builder import ParserRejectedMarkup
from prometheus_client import Counter

from .embedded import detect_blocking, detect_spa_shell, extract_embedded
from .headless import PageRenderer
from .models import ExtractionOutcome, ExtractionResult
from .static import extract_static, parse_html

logger = logging.getLogger(__name__)

EXTRACTION_OUTCOMES = Counter(
    "knowledge_extraction_outcomes_total",
    "Classification of tiered page extraction.",
    labelnames=("outcome",),
)

MIN_STATIC_CHARS = 200
MIN_CONTENT_CHARS = 50


class TieredExtractor:
    """Classify and extract a page: blocking, static, embedded data, then headless.

    The headless tier only runs for pages that look like client-rendered
    shells and only when a renderer is configured.
    """

    def __init__(
        self,
        *,
        renderer: PageRenderer | None = None,
        max_text_chars: int = 200_000,
        max_links: int = 4,
    ) -> None:
        self._renderer = renderer
        self._max_text_chars = max_text_chars
        self._max_links = max_links

    async def extract(self, html: str, *, url: str, status_code: int = 200) -> ExtractionResult:
        result = await self._classify(html, url=url, status_code=status_code)
        EXTRACTION_OUTCOMES.labels(outcome=result.outcome.value).inc()
        logger.info(
            "page extraction classified",
            extra={
                "url": url,
                "outcome": result.outcome.value,
                "source": result.source,
                "chars": len(result.text),
                "items": result.item_count,
            },
        )
        return result

    async def _classify(self, html: str, *, url: str, status_code: int) -> ExtractionResult:
        try:
            soup = parse_html(html)
            static = extract_static(
                html,
                base_url=url,
                max_chars=self._max_text_chars,
                max_links=self._max_links,
            )
        except (ParserRejectedMarkup, RecursionError):
            logger.warning("html could not be parsed", extra={"url": url})
            return ExtractionResult(outcome=ExtractionOutcome.PARSE_ERROR, source="parser")

        blocked = detect_blocking(html, status_code, visible_chars=len(static.text))
        if blocked is not None:
            return ExtractionResult(outcome=blocked, source="blocking_detection")

        if len(static.text) >= MIN_STATIC_CHARS:
            return ExtractionResult(
                outcome=ExtractionOutcome.STATIC_OK,
                text=static.text,
                links=static.links,
                source="static",
            )

        embedded = extract_embedded(html, soup)
        if embedded is not None:
            embedded.links = static.links
            return embedded

        if detect_spa_shell(soup):
            if self._renderer is None:
                return ExtractionResult(
                    outcome=ExtractionOutcome.JS_SHELL_DETECTED, source="spa_detection"
                )
            rendered = await self._renderer.render(url)
            return ExtractionResult(
                outcome=rendered.to_extraction_outcome(),
                text=rendered.text[: self._max_text_chars],
                items=rendered.items,
                source=rendered.source,
            )

        outcome = (
            ExtractionOutcome.STATIC_OK
            if len(static.text) >= MIN_CONTENT_CHARS
            else ExtractionOutcome.NO_ITEMS_FOUND
        )
        return ExtractionResult(
            outcome=outcome, text=static.text, links=static.links, source="static"
        )
