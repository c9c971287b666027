"""HTTP fetching for untrusted URLs with manual, re-validated redirects."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx
from prometheus_client import Counter

from knowledgebase.core.config import FetchSettings
from knowledgebase.ingestion.errors import FetchFailed, FetchTimeout, TooLarge, UrlNotAllowed

from .guard import UrlGuard, ValidatedUrl

logger = logging.getLogger(__name__)

FETCH_RESULTS = Counter(
    "knowledge_fetch_results_total",
    "Outcome of guarded URL fetches.",
    labelnames=("outcome",),
)

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
_ASSET_EXTENSIONS = (".pdf", ".png", ".jpg", ".jpeg", ".webp", ".gif")


@dataclass(slots=True, frozen=True)
class FetchedResource:
    """Body and metadata of a successfully fetched URL."""

    requested_url: str
    final_url: str
    status_code: int
    content_type: str
    body: bytes

    @property
    def mime_type(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf" or _path(self.final_url).endswith(".pdf")

    @property
    def is_image(self) -> bool:
        if self.mime_type.startswith("image/"):
            return True
        return _path(self.final_url).endswith(_ASSET_EXTENSIONS[1:])

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _path(url: str) -> str:
    return urlsplit(url).path.lower()


def _looks_like_asset(url: str, content_type: str) -> bool:
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime == "application/pdf" or mime.startswith("image/"):
        return True
    return _path(url).endswith(_ASSET_EXTENSIONS)


class GuardedFetcher:
    """Fetch a URL while enforcing the URL policy on every hop.

    The underlying client never follows redirects itself; each ``Location`` is
    validated before it is requested. Requests to DNS names connect to the
    address the guard checked, with the original name sent as ``Host`` and TLS
    server name. The byte budget depends on whether the target looks like an
    asset (PDF or image) or a page.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        settings: FetchSettings | None = None,
        guard: UrlGuard | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or FetchSettings()
        self._guard = guard or UrlGuard(dns_timeout=self._settings.dns_timeout_seconds)

    async def fetch(self, url: str) -> FetchedResource:
        """Return the body of ``url`` or raise an :class:`IngestionError` subclass."""

        try:
            async with asyncio.timeout(self._settings.timeout_seconds):
                resource = await self._fetch_following_redirects(url)
        except TimeoutError as exc:
            FETCH_RESULTS.labels(outcome="timeout").inc()
            raise FetchTimeout(f"fetching {url} timed out") from exc
        except FetchTimeout:
            FETCH_RESULTS.labels(outcome="timeout").inc()
            raise
        except UrlNotAllowed:
            FETCH_RESULTS.labels(outcome="blocked").inc()
            raise
        except TooLarge:
            FETCH_RESULTS.labels(outcome="too_large").inc()
            raise
        except FetchFailed:
            FETCH_RESULTS.labels(outcome="failed").inc()
            raise

        FETCH_RESULTS.labels(outcome="ok").inc()
        return resource

    async def _fetch_following_redirects(self, url: str) -> FetchedResource:
        current = url
        for hop in range(self._settings.max_redirects + 1):
            target = await self._guard.resolve(current)
            location, resource = await self._request(url, target)
            if resource is not None:
                return resource
            logger.debug(
                "following redirect",
                extra={"from_url": target.url, "location": location, "hop": hop + 1},
            )
            current = urljoin(target.url, location)

        raise FetchFailed(
            f"too many redirects (>{self._settings.max_redirects}) for {url}",
            retryable=False,
        )

    async def _request(
        self, requested: str, target: ValidatedUrl
    ) -> tuple[str, FetchedResource | None]:
        url = target.url
        headers = {
            "User-Agent": self._settings.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/pdf,image/*;q=0.9,*/*;q=0.8",
        }
        extensions: dict[str, str] = {}
        if target.address is not None:
            headers["Host"] = target.host
            extensions["sni_hostname"] = target.host
        try:
            async with self._client.stream(
                "GET",
                target.pinned_url(),
                headers=headers,
                extensions=extensions,
                follow_redirects=False,
            ) as response:
                if response.status_code in _REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if not location:
                        raise FetchFailed(
                            f"redirect from {url} without location",
                            status_code=response.status_code,
                            retryable=False,
                        )
                    return location, None

                if response.status_code >= 400:
                    raise FetchFailed(
                        f"upstream returned HTTP {response.status_code} for {url}",
                        status_code=response.status_code,
                    )

                content_type = response.headers.get("content-type", "")
                limit = (
                    self._settings.max_asset_bytes
                    if _looks_like_asset(url, content_type)
                    else self._settings.max_html_bytes
                )
                body = await self._read_limited(response, limit, url)
                return "", FetchedResource(
                    requested_url=requested,
                    final_url=url,
                    status_code=response.status_code,
                    content_type=content_type,
                    body=body,
                )
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"fetching {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise FetchFailed(f"failed to fetch {url}: {exc}") from exc

    @staticmethod
    async def _read_limited(response: httpx.Response, limit: int, url: str) -> bytes:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise TooLarge(f"{url} declares {declared} bytes (limit {limit})")

        received = 0
        parts: list[bytes] = []
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > limit:
                raise TooLarge(f"{url} exceeded {limit} bytes")
            parts.append(chunk)
        return b"".join(parts)
