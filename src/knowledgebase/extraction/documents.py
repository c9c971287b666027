"""Turn a document source (text, URL, PDF, image, file) into plain text."""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import pypdf
from pypdf.errors import PyPdfError

from knowledgebase.core.config import FetchSettings, LimitsSettings
from knowledgebase.core.db.models import KnowledgeDocument, SourceKind
from knowledgebase.fetch.fetcher import FetchedResource
from knowledgebase.fetch.storage import StoredObject
from knowledgebase.ingestion.errors import (
    ExtractionFailed,
    FetchFailed,
    IngestionError,
    MissingSourceField,
    TooManyPages,
)

from .embedded import detect_blocking
from .models import ExtractionOutcome, LinkCandidate, outcome_message
from .tiered import MIN_CONTENT_CHARS, TieredExtractor
from .understanding import DocumentUnderstanding

logger = logging.getLogger(__name__)

_MIN_CLEAN_PDF_CHARS = 200
_MIN_PDF_CHARS_PER_PAGE = 50
_REPLACEMENT_CHAR = "\ufffd"


class UrlFetcher(Protocol):
    async def fetch(self, url: str) -> FetchedResource:
        ...


class ObjectReader(Protocol):
    async def download(self, path: str, *, max_bytes: int) -> StoredObject:
        ...


@dataclass(slots=True, frozen=True)
class SourceRef:
    """Location of the content to extract, independent of where it is stored."""

    kind: SourceKind
    name: str = ""
    text: str | None = None
    url: str | None = None
    storage_path: str | None = None
    mime_type: str | None = None

    @classmethod
    def from_document(cls, document: KnowledgeDocument) -> SourceRef:
        return cls(
            kind=document.source_kind,
            name=document.source_name,
            text=document.source_text,
            url=document.source_url,
            storage_path=document.storage_path,
            mime_type=document.mime_type,
        )


@dataclass(slots=True, frozen=True)
class ExtractedText:
    text: str
    mime_type: str
    page_count: int | None = None
    source: str = ""


def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").strip()


def pdf_text_looks_corrupted(text: str, page_count: int) -> bool:
    """Heuristic for PDFs whose text layer is missing or garbled."""

    if _REPLACEMENT_CHAR in text or len(text) < _MIN_CLEAN_PDF_CHARS:
        return True
    return len(text) / max(page_count, 1) < _MIN_PDF_CHARS_PER_PAGE


def _read_pdf(data: bytes) -> tuple[str, int]:
    reader = pypdf.PdfReader(io.BytesIO(data))
    if reader.is_encrypted:
        reader.decrypt("")
    page_count = len(reader.pages)
    text = "\n\n".join((page.extract_text() or "").strip() for page in reader.pages)
    return text.strip(), page_count


class DocumentExtractor:
    """Dispatch extraction by source kind.

    URL sources go through the guarded fetcher and the tiered extractor; PDFs
    and images found by URL are routed to the same paths as uploads.
    """

    def __init__(
        self,
        *,
        fetcher: UrlFetcher,
        tiered: TieredExtractor,
        storage: ObjectReader | None = None,
        understanding: DocumentUnderstanding | None = None,
        fetch_settings: FetchSettings | None = None,
        limits: LimitsSettings | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._tiered = tiered
        self._storage = storage
        self._understanding = understanding
        self._fetch_settings = fetch_settings or FetchSettings()
        self._limits = limits or LimitsSettings()
        self._handlers: dict[SourceKind, Callable[[SourceRef], Awaitable[ExtractedText]]] = {
            SourceKind.TEXT: self._extract_text,
            SourceKind.URL: self._extract_url_source,
            SourceKind.PDF: self._extract_pdf_source,
            SourceKind.IMAGE: self._extract_image_source,
            SourceKind.FILE: self._extract_file_source,
        }

    async def extract_document(self, document: KnowledgeDocument) -> ExtractedText:
        return await self.extract(SourceRef.from_document(document))

    async def extract(self, source: SourceRef) -> ExtractedText:
        try:
            kind = SourceKind(source.kind)
        except ValueError as exc:
            raise ExtractionFailed(f"unsupported source kind: {source.kind}") from exc
        return await self._handlers[kind](source)

    async def _extract_text(self, source: SourceRef) -> ExtractedText:
        if not source.text or not source.text.strip():
            raise MissingSourceField("text source has no text")
        return ExtractedText(text=normalize_text(source.text), mime_type="text/plain", source="text")

    async def _extract_url_source(self, source: SourceRef) -> ExtractedText:
        if not source.url:
            raise MissingSourceField("url source has no URL")
        return await self.extract_url(source.url)

    async def _extract_pdf_source(self, source: SourceRef) -> ExtractedText:
        stored = await self._download(source)
        return await self.extract_pdf_bytes(stored.body)

    async def _extract_image_source(self, source: SourceRef) -> ExtractedText:
        stored = await self._download(source)
        mime_type = source.mime_type or stored.content_type or "image/jpeg"
        return await self.extract_image_bytes(stored.body, mime_type)

    async def _extract_file_source(self, source: SourceRef) -> ExtractedText:
        stored = await self._download(source)
        mime_type = (source.mime_type or stored.content_type or "text/plain").lower()
        if mime_type.startswith("image/"):
            return await self.extract_image_bytes(stored.body, mime_type)
        if mime_type == "application/pdf":
            return await self.extract_pdf_bytes(stored.body)
        text = normalize_text(stored.body.decode("utf-8", errors="replace"))
        return ExtractedText(text=text, mime_type=mime_type, source="file")

    async def _download(self, source: SourceRef) -> StoredObject:
        if not source.storage_path:
            raise MissingSourceField(f"{source.kind} source has no storage path")
        if self._storage is None:
            raise ExtractionFailed("object storage is not configured", retryable=False)
        return await self._storage.download(
            source.storage_path, max_bytes=self._limits.max_upload_bytes
        )

    async def extract_pdf_bytes(self, data: bytes) -> ExtractedText:
        """Extract PDF text locally, falling back to model transcription.

        The fallback is used when the text layer looks garbled or the page
        count is over the cap. Without a transcription model an oversized PDF
        raises :class:`TooManyPages`.
        """

        text = ""
        page_count = 0
        try:
            text, page_count = await asyncio.to_thread(_read_pdf, data)
        except (PyPdfError, ValueError) as exc:
            logger.warning("local pdf parsing failed", extra={"error": str(exc)})

        too_many_pages = page_count > self._limits.max_pdf_pages
        if too_many_pages and self._understanding is None:
            raise TooManyPages(
                f"PDF has {page_count} pages (limit {self._limits.max_pdf_pages})"
            )

        if not too_many_pages and not pdf_text_looks_corrupted(text or "", page_count):
            return ExtractedText(
                text=normalize_text(text),
                mime_type="application/pdf",
                page_count=page_count,
                source="pdf_text",
            )

        if self._understanding is None:
            if text and len(text) >= MIN_CONTENT_CHARS:
                return ExtractedText(
                    text=normalize_text(text),
                    mime_type="application/pdf",
                    page_count=page_count,
                    source="pdf_text",
                )
            raise ExtractionFailed("PDF has no extractable text layer")

        logger.info(
            "pdf text layer unusable; using document understanding",
            extra={
                "pages": page_count,
                "chars": len(text or ""),
                "too_many_pages": too_many_pages,
            },
        )
        transcribed = await self._understanding.extract_pdf_text(data)
        return ExtractedText(
            text=normalize_text(transcribed),
            mime_type="application/pdf",
            page_count=page_count or None,
            source="pdf_vision",
        )

    async def extract_image_bytes(self, data: bytes, mime_type: str) -> ExtractedText:
        if self._understanding is None:
            raise ExtractionFailed("image extraction requires a document understanding model")
        text = await self._understanding.extract_image_text(data, mime_type)
        return ExtractedText(text=normalize_text(text), mime_type=mime_type, source="image_vision")

    async def extract_url(self, url: str, *, follow_links: bool = True) -> ExtractedText:
        """Fetch and extract ``url``; thin pages pull in same-origin link targets."""

        resource = await self._fetch(url)
        if resource.is_pdf:
            return await self.extract_pdf_bytes(resource.body)
        if resource.is_image:
            return await self.extract_image_bytes(resource.body, resource.mime_type or "image/jpeg")
        if resource.mime_type in {"text/plain", "text/markdown", "application/json"}:
            text = normalize_text(resource.text())[: self._fetch_settings.max_text_chars]
            return ExtractedText(text=text, mime_type=resource.mime_type, source="plain")

        result = await self._tiered.extract(
            resource.text(), url=resource.final_url, status_code=resource.status_code
        )
        if not result.outcome.succeeded and result.outcome is not ExtractionOutcome.NO_ITEMS_FOUND:
            raise ExtractionFailed(
                outcome_message(result.outcome),
                outcome=result.outcome.value,
                retryable=result.outcome.retryable,
            )

        text = result.text
        if (
            follow_links
            and result.outcome is not ExtractionOutcome.EMBEDDED_JSON_OK
            and len(text) < self._fetch_settings.follow_links_below_chars
            and result.links
        ):
            text = await self._append_linked_pages(
                text, result.links[: self._fetch_settings.max_follow_links]
            )

        text = normalize_text(text)[: self._fetch_settings.max_text_chars]
        if len(text) < MIN_CONTENT_CHARS:
            raise ExtractionFailed(
                outcome_message(ExtractionOutcome.NO_ITEMS_FOUND),
                outcome=ExtractionOutcome.NO_ITEMS_FOUND.value,
            )
        return ExtractedText(text=text, mime_type="text/html", source=result.source)

    async def _fetch(self, url: str) -> FetchedResource:
        try:
            return await self._fetcher.fetch(url)
        except FetchFailed as exc:
            outcome = detect_blocking("", exc.status_code or 0)
            if outcome is None:
                raise
            raise ExtractionFailed(
                outcome_message(outcome), outcome=outcome.value, retryable=outcome.retryable
            ) from exc

    async def _append_linked_pages(self, text: str, links: list[LinkCandidate]) -> str:
        results = await asyncio.gather(
            *(self.extract_url(link.url, follow_links=False) for link in links),
            return_exceptions=True,
        )
        sections = [text] if text else []
        for link, outcome in zip(links, results, strict=True):
            if isinstance(outcome, IngestionError):
                logger.warning(
                    "skipping linked page",
                    extra={"url": link.url, "code": outcome.code, "error": outcome.message},
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome.text:
                sections.append(f"Source: {link.url}\n{outcome.text}")
        return "\n\n".join(sections)
