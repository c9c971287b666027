from __future__ import annotations

import json

import httpx
import pytest

from knowledgebase.core.config import HeadlessSettings
from knowledgebase.extraction.headless import BrowserlessRenderer, HeadlessOutcome, HeadlessResult
from knowledgebase.extraction.models import ExtractionOutcome
from knowledgebase.extraction.tiered import TieredExtractor

pytestmark = pytest.mark.unit

ARTICLE = "Our spa offers massages, facials and day packages for two. " * 6
SHELL = (
    "<html><body><div id='root'></div>"
    + "".join(f"<script src='/static/{index}.js'></script>" for index in range(5))
    + "</body></html>"
)


class StubRenderer:
    def __init__(self, result: HeadlessResult) -> None:
        self.result = result
        self.urls: list[str] = []

    async def render(self, url: str) -> HeadlessResult:
        self.urls.append(url)
        return self.result


@pytest.mark.asyncio
async def test_static_page_is_static_ok() -> None:
    html = f"<html><body><nav><a href='/prices'>Prices</a></nav><main><p>{ARTICLE}</p></main></body></html>"

    result = await TieredExtractor().extract(html, url="https://spa.example.com/")

    assert result.outcome is ExtractionOutcome.STATIC_OK
    assert result.source == "static"
    assert result.text.startswith("Our spa offers")
    assert [link.url for link in result.links] == ["https://spa.example.com/prices"]


@pytest.mark.asyncio
async def test_forbidden_response_is_classified_before_parsing_content() -> None:
    html = f"<html><body><main>{ARTICLE}</main></body></html>"

    result = await TieredExtractor().extract(html, url="https://spa.example.com/", status_code=403)

    assert result.outcome is ExtractionOutcome.BLOCKED_403
    assert result.text == ""


@pytest.mark.asyncio
async def test_thin_page_with_embedded_json_uses_embedded_tier() -> None:
    data = {"props": {"items": [{"name": "Hot stone massage", "price": 70}]}}
    html = (
        "<html><body><div id='__next'></div>"
        f"<script id='__NEXT_DATA__' type='application/json'>{json.dumps(data)}</script>"
        "</body></html>"
    )

    result = await TieredExtractor().extract(html, url="https://spa.example.com/")

    assert result.outcome is ExtractionOutcome.EMBEDDED_JSON_OK
    assert result.items[0]["name"] == "Hot stone massage"


@pytest.mark.asyncio
async def test_spa_shell_without_renderer_is_reported() -> None:
    result = await TieredExtractor().extract(SHELL, url="https://spa.example.com/")

    assert result.outcome is ExtractionOutcome.JS_SHELL_DETECTED
    assert not result.outcome.succeeded


@pytest.mark.asyncio
async def test_spa_shell_is_rendered_when_renderer_configured() -> None:
    renderer = StubRenderer(
        HeadlessResult(
            outcome=HeadlessOutcome.JSON_OK,
            text="1. Facial\n   Price: 80",
            items=[{"name": "Facial", "price": 80}],
            source="headless:json_ld",
        )
    )

    result = await TieredExtractor(renderer=renderer).extract(SHELL, url="https://spa.example.com/")

    assert renderer.urls == ["https://spa.example.com/"]
    assert result.outcome is ExtractionOutcome.EMBEDDED_JSON_OK
    assert result.source == "headless:json_ld"


@pytest.mark.asyncio
async def test_short_page_that_is_not_a_shell_reports_no_items() -> None:
    html = "<html><body><p>Closed today.</p><p>See you tomorrow, with fresh bread and coffee for everyone.</p></body></html>"
    thin = "<html><body><p>Closed.</p><p>Back soon.</p></body></html>"

    assert (await TieredExtractor().extract(html, url="https://a.example.com/")).outcome is (
        ExtractionOutcome.STATIC_OK
    )
    assert (await TieredExtractor().extract(thin, url="https://a.example.com/")).outcome is (
        ExtractionOutcome.NO_ITEMS_FOUND
    )


@pytest.mark.parametrize(
    ("outcome", "text", "expected"),
    [
        (HeadlessOutcome.JSON_OK, "", ExtractionOutcome.EMBEDDED_JSON_OK),
        (HeadlessOutcome.NO_ITEMS, "x" * 200, ExtractionOutcome.STATIC_OK),
        (HeadlessOutcome.NO_ITEMS, "x" * 199, ExtractionOutcome.JS_SHELL_DETECTED),
        (HeadlessOutcome.BLOCKED, "", ExtractionOutcome.RATE_LIMITED_429),
        (HeadlessOutcome.CAPTCHA, "", ExtractionOutcome.CAPTCHA_CHALLENGE),
        (HeadlessOutcome.TIMEOUT, "", ExtractionOutcome.TIMEOUT),
        (HeadlessOutcome.ERROR, "", ExtractionOutcome.JS_SHELL_DETECTED),
    ],
)
def test_headless_outcome_mapping(
    outcome: HeadlessOutcome, text: str, expected: ExtractionOutcome
) -> None:
    assert HeadlessResult(outcome=outcome, text=text).to_extraction_outcome() is expected


def make_renderer(handler) -> tuple[BrowserlessRenderer, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    settings = HeadlessSettings(endpoint_url="https://chrome.example.com", token="secret")
    return BrowserlessRenderer(client=client, settings=settings), requests


def test_renderer_requires_endpoint_and_token() -> None:
    client = httpx.AsyncClient()
    with pytest.raises(ValueError):
        BrowserlessRenderer(client=client, settings=HeadlessSettings())


@pytest.mark.asyncio
async def test_renderer_posts_to_content_endpoint_and_extracts_json_ld() -> None:
    schema = {"@type": "Product", "name": "Deep tissue massage", "offers": {"price": 90}}
    rendered = f'<html><script type="application/ld+json">{json.dumps(schema)}</script></html>'
    renderer, requests = make_renderer(lambda request: httpx.Response(200, text=rendered))

    result = await renderer.render("https://spa.example.com/")

    assert result.outcome is HeadlessOutcome.JSON_OK
    assert result.source == "headless:json_ld"
    assert requests[0].url.path == "/content"
    assert requests[0].url.params["token"] == "secret"
    assert json.loads(requests[0].content)["url"] == "https://spa.example.com/"


@pytest.mark.asyncio
async def test_renderer_maps_rate_limit_and_errors() -> None:
    limited, _ = make_renderer(lambda request: httpx.Response(429))
    broken, _ = make_renderer(lambda request: httpx.Response(500))

    assert (await limited.render("https://spa.example.com/")).outcome is HeadlessOutcome.BLOCKED
    assert (await broken.render("https://spa.example.com/")).outcome is HeadlessOutcome.ERROR


@pytest.mark.asyncio
async def test_renderer_timeout_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    renderer, _ = make_renderer(handler)

    assert (await renderer.render("https://spa.example.com/")).outcome is HeadlessOutcome.TIMEOUT


def test_classify_detects_captcha_in_rendered_html() -> None:
    renderer, _ = make_renderer(lambda request: httpx.Response(200))

    result = renderer.classify("<div class='cf-turnstile'></div>", "https://spa.example.com/")

    assert result.outcome is HeadlessOutcome.CAPTCHA


def test_classify_keeps_long_rendered_text() -> None:
    renderer, _ = make_renderer(lambda request: httpx.Response(200))

    result = renderer.classify(
        f"<html><body><main>{ARTICLE}</main></body></html>", "https://spa.example.com/"
    )

    assert result.outcome is HeadlessOutcome.NO_ITEMS
    assert result.to_extraction_outcome() is ExtractionOutcome.STATIC_OK
