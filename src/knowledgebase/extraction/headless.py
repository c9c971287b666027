"""Headless rendering tier backed by a Browserless-compatible service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from knowledgebase.core.config import HeadlessSettings

from .embedded import detect_blocking, extract_embedded
from .models import ExtractionOutcome
from .static import extract_static, parse_html

logger = logging.getLogger(__name__)

_MIN_RENDERED_TEXT_CHARS = 200


class HeadlessOutcome(str, Enum):
    JSON_OK = "headless_json_ok"
    NO_ITEMS = "headless_no_items"
    BLOCKED = "headless_blocked"
    CAPTCHA = "headless_captcha"
    TIMEOUT = "headless_timeout"
    ERROR = "headless_error"


@dataclass(slots=True)
class HeadlessResult:
    outcome: HeadlessOutcome
    text: str = ""
    items: list[dict[str, Any]] = field(default_factory=list)
    source: str = "headless"

    def to_extraction_outcome(self) -> ExtractionOutcome:
        """Map the renderer classification onto the shared extraction taxonomy."""

        if self.outcome is HeadlessOutcome.JSON_OK:
            return ExtractionOutcome.EMBEDDED_JSON_OK
        if self.outcome is HeadlessOutcome.NO_ITEMS:
            if len(self.text) >= _MIN_RENDERED_TEXT_CHARS:
                return ExtractionOutcome.STATIC_OK
            return ExtractionOutcome.JS_SHELL_DETECTED
        if self.outcome is HeadlessOutcome.BLOCKED:
            return ExtractionOutcome.RATE_LIMITED_429
        if self.outcome is HeadlessOutcome.CAPTCHA:
            return ExtractionOutcome.CAPTCHA_CHALLENGE
        if self.outcome is HeadlessOutcome.TIMEOUT:
            return ExtractionOutcome.TIMEOUT
        return ExtractionOutcome.JS_SHELL_DETECTED


class PageRenderer(Protocol):
    async def render(self, url: str) -> HeadlessResult:
        ...


class BrowserlessRenderer:
    """Render client-side pages through the Browserless ``/content`` endpoint."""

    def __init__(self, *, client: httpx.AsyncClient, settings: HeadlessSettings) -> None:
        if not settings.endpoint_url or not settings.token:
            raise ValueError("headless rendering requires endpoint_url and token")
        self._client = client
        self._settings = settings

    async def render(self, url: str) -> HeadlessResult:
        timeout_ms = int(self._settings.timeout_seconds * 1000)
        payload = {
            "url": url,
            "gotoOptions": {"waitUntil": "networkidle0", "timeout": timeout_ms},
            "waitForSelector": {"selector": "body", "timeout": 10_000},
            "bestAttempt": True,
        }
        endpoint = f"{str(self._settings.endpoint_url).rstrip('/')}/content"
        try:
            response = await self._client.post(
                endpoint,
                params={"token": self._settings.token, "stealth": "true"},
                json=payload,
                timeout=self._settings.timeout_seconds + 15.0,
            )
        except httpx.TimeoutException:
            logger.warning("headless render timed out", extra={"url": url})
            return HeadlessResult(outcome=HeadlessOutcome.TIMEOUT)
        except httpx.HTTPError as exc:
            logger.warning(
                "headless render failed", extra={"url": url, "error": str(exc)}
            )
            return HeadlessResult(outcome=HeadlessOutcome.ERROR)

        if response.status_code == 429:
            return HeadlessResult(outcome=HeadlessOutcome.BLOCKED, source="rate_limited")
        if response.status_code >= 400:
            logger.warning(
                "headless renderer returned an error",
                extra={"url": url, "status": response.status_code},
            )
            return HeadlessResult(outcome=HeadlessOutcome.ERROR, source="renderer_error")

        return self.classify(response.text, url)

    def classify(self, html: str, url: str) -> HeadlessResult:
        """Run the embedded and static tiers over rendered HTML."""

        soup = parse_html(html)
        static = extract_static(html, base_url=url, max_links=0)
        if detect_blocking(html, 200, visible_chars=len(static.text)):
            return HeadlessResult(outcome=HeadlessOutcome.CAPTCHA)

        embedded = extract_embedded(html, soup)
        if embedded is not None:
            return HeadlessResult(
                outcome=HeadlessOutcome.JSON_OK,
                text=embedded.text,
                items=embedded.items,
                source=f"headless:{embedded.source}",
            )

        text = static.text[: self._settings.max_text_chars]
        if len(text) < _MIN_RENDERED_TEXT_CHARS:
            text = ""
        return HeadlessResult(outcome=HeadlessOutcome.NO_ITEMS, text=text, source="headless_html")
