from __future__ import annotations

import httpx
import pytest
from prometheus_client import REGISTRY

from knowledgebase.core.config import FetchSettings
from knowledgebase.fetch.fetcher import GuardedFetcher
from knowledgebase.fetch.guard import UrlGuard
from knowledgebase.ingestion.errors import FetchFailed, FetchTimeout, TooLarge, UrlNotAllowed

pytestmark = pytest.mark.unit

PUBLIC = {
    "example.com": ["93.184.216.34"],
    "cdn.example.com": ["93.184.216.35"],
    "mixed.example.com": ["93.184.216.36", "127.0.0.1"],
}


async def fake_resolver(host: str) -> list[str]:
    return PUBLIC.get(host, ["10.0.0.1"])


def make_fetcher(handler, **settings) -> tuple[GuardedFetcher, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    fetcher = GuardedFetcher(
        client=client,
        settings=FetchSettings(**settings),
        guard=UrlGuard(resolver=fake_resolver),
    )
    return fetcher, requests


@pytest.mark.asyncio
async def test_fetch_returns_body_and_metadata() -> None:
    fetcher, requests = make_fetcher(
        lambda request: httpx.Response(
            200, text="<html>ok</html>", headers={"content-type": "text/html; charset=utf-8"}
        )
    )

    resource = await fetcher.fetch("https://example.com/menu")

    assert resource.status_code == 200
    assert resource.mime_type == "text/html"
    assert resource.text() == "<html>ok</html>"
    assert not resource.is_pdf
    assert requests[0].headers["user-agent"].startswith("Mozilla/5.0")


@pytest.mark.asyncio
async def test_requests_connect_to_the_validated_address() -> None:
    fetcher, requests = make_fetcher(
        lambda request: httpx.Response(200, text="ok", headers={"content-type": "text/plain"})
    )

    resource = await fetcher.fetch("https://example.com/menu?lang=en")

    request = requests[0]
    assert str(request.url) == "https://93.184.216.34/menu?lang=en"
    assert request.headers["host"] == "example.com"
    assert request.extensions["sni_hostname"] == "example.com"
    assert resource.final_url == "https://example.com/menu?lang=en"


@pytest.mark.asyncio
async def test_metadata_ip_is_blocked_before_any_request() -> None:
    fetcher, requests = make_fetcher(lambda request: httpx.Response(200, text="secret"))

    with pytest.raises(UrlNotAllowed):
        await fetcher.fetch("https://169.254.169.254/latest/meta-data")

    assert requests == []


@pytest.mark.asyncio
async def test_redirect_to_private_host_is_blocked() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": "https://internal.example.net/admin"})

    fetcher, requests = make_fetcher(handler)

    with pytest.raises(UrlNotAllowed):
        await fetcher.fetch("https://example.com/start")

    assert [(request.headers["host"], request.url.path) for request in requests] == [
        ("example.com", "/start")
    ]


@pytest.mark.asyncio
async def test_redirect_to_http_is_blocked() -> None:
    fetcher, _ = make_fetcher(
        lambda request: httpx.Response(301, headers={"location": "http://example.com/plain"})
    )

    with pytest.raises(UrlNotAllowed):
        await fetcher.fetch("https://example.com/")


@pytest.mark.asyncio
async def test_relative_redirect_is_followed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"location": "/new"})
        return httpx.Response(200, text="moved", headers={"content-type": "text/plain"})

    fetcher, requests = make_fetcher(handler)

    resource = await fetcher.fetch("https://example.com/old")

    assert resource.final_url == "https://example.com/new"
    assert resource.requested_url == "https://example.com/old"
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_too_many_redirects_fail() -> None:
    fetcher, requests = make_fetcher(
        lambda request: httpx.Response(302, headers={"location": "/loop"}), max_redirects=2
    )

    with pytest.raises(FetchFailed, match="too many redirects") as excinfo:
        await fetcher.fetch("https://example.com/loop")

    assert not excinfo.value.retryable
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_page_over_budget_is_rejected() -> None:
    fetcher, _ = make_fetcher(
        lambda request: httpx.Response(
            200, content=b"x" * 2048, headers={"content-type": "text/html"}
        ),
        max_html_bytes=1024,
    )

    with pytest.raises(TooLarge):
        await fetcher.fetch("https://example.com/huge")


@pytest.mark.asyncio
async def test_assets_use_the_asset_budget() -> None:
    fetcher, _ = make_fetcher(
        lambda request: httpx.Response(
            200, content=b"%PDF" + b"0" * 2044, headers={"content-type": "application/pdf"}
        ),
        max_html_bytes=1024,
        max_asset_bytes=4096,
    )

    resource = await fetcher.fetch("https://cdn.example.com/menu.pdf")

    assert resource.is_pdf
    assert len(resource.body) == 2048


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "retryable"), [(404, False), (429, True), (503, True)])
async def test_http_errors_carry_retry_hint(status: int, retryable: bool) -> None:
    fetcher, _ = make_fetcher(lambda request: httpx.Response(status))

    with pytest.raises(FetchFailed) as excinfo:
        await fetcher.fetch("https://example.com/")

    assert excinfo.value.status_code == status
    assert excinfo.value.retryable is retryable


@pytest.mark.asyncio
async def test_redirect_to_name_with_a_private_record_is_blocked() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["host"] == "example.com":
            return httpx.Response(302, headers={"location": "https://mixed.example.com/"})
        return httpx.Response(200, text="internal")

    fetcher, requests = make_fetcher(handler)

    with pytest.raises(UrlNotAllowed):
        await fetcher.fetch("https://example.com/go")

    assert [request.headers["host"] for request in requests] == ["example.com"]


def timeout_count() -> float:
    return REGISTRY.get_sample_value("knowledge_fetch_results_total", {"outcome": "timeout"}) or 0.0


@pytest.mark.asyncio
async def test_client_timeouts_are_counted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    fetcher, _ = make_fetcher(handler)
    before = timeout_count()

    with pytest.raises(FetchTimeout):
        await fetcher.fetch("https://example.com/slow")

    assert timeout_count() == before + 1
