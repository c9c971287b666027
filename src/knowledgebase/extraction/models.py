"""Result types shared by the extraction tiers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ExtractionOutcome(str, Enum):
    """Classification of what an extraction attempt produced."""

    STATIC_OK = "static_ok"
    EMBEDDED_JSON_OK = "embedded_json_ok"
    JS_SHELL_DETECTED = "js_shell_detected"
    BLOCKED_403 = "blocked_403"
    RATE_LIMITED_429 = "rate_limited_429"
    CAPTCHA_CHALLENGE = "captcha_challenge"
    NO_ITEMS_FOUND = "no_items_found"
    PARSE_ERROR = "parse_error"
    TIMEOUT = "timeout"
    UNKNOWN_ERROR = "unknown_error"

    @property
    def succeeded(self) -> bool:
        return self in {ExtractionOutcome.STATIC_OK, ExtractionOutcome.EMBEDDED_JSON_OK}

    @property
    def retryable(self) -> bool:
        return self in {ExtractionOutcome.RATE_LIMITED_429, ExtractionOutcome.TIMEOUT}


_MESSAGES: dict[ExtractionOutcome, str] = {
    ExtractionOutcome.JS_SHELL_DETECTED: (
        "This website requires JavaScript to load content. "
        "Try uploading a screenshot or PDF instead."
    ),
    ExtractionOutcome.BLOCKED_403: "Access to this website was denied (403 Forbidden).",
    ExtractionOutcome.RATE_LIMITED_429: (
        "Rate limited by the website. Please try again later."
    ),
    ExtractionOutcome.CAPTCHA_CHALLENGE: (
        "This website has bot protection. Try uploading a screenshot instead."
    ),
    ExtractionOutcome.NO_ITEMS_FOUND: (
        "Could not find meaningful content on this page. "
        "Try a direct link to the menu or price list page."
    ),
    ExtractionOutcome.PARSE_ERROR: "Could not parse the website content.",
    ExtractionOutcome.TIMEOUT: "Request timed out. The website may be slow or unreachable.",
    ExtractionOutcome.UNKNOWN_ERROR: (
        "An unexpected error occurred while extracting content."
    ),
}


def outcome_message(outcome: ExtractionOutcome) -> str:
    """Return an actionable, user-facing explanation for a failed extraction."""

    return _MESSAGES.get(outcome, "")


@dataclass(slots=True, frozen=True)
class LinkCandidate:
    """Same-origin link worth following for additional content."""

    url: str
    score: int
    text: str = ""


@dataclass(slots=True)
class ExtractionResult:
    """Outcome of running the extraction tiers over one page."""

    outcome: ExtractionOutcome
    text: str = ""
    items: list[dict[str, Any]] = field(default_factory=list)
    links: list[LinkCandidate] = field(default_factory=list)
    source: str = ""
    low_confidence: int = 0

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def message(self) -> str:
        return outcome_message(self.outcome)
