"""Async pipeline turning a knowledge document into active, embedded chunks."""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from prometheus_client import Counter

from knowledgebase.core.context import RequestContext
from knowledgebase.core.db.models import (
    CatalogExtractionStatus,
    DocumentStatus,
    KnowledgeDocument,
)
from knowledgebase.extraction.documents import ExtractedText, normalize_text
from knowledgebase.rag.chunking import ChunkDraft, ChunkingConfig, chunk_text, dedupe_chunks, sha256_hex
from knowledgebase.utils.tracing import traced

from .errors import ContentQualityError, IngestionError, PersistenceError
from .models import IngestionStage, KnowledgeIngestTask

logger = logging.getLogger(__name__)

INGESTION_RESULTS = Counter(
    "knowledge_ingestion_results_total",
    "Knowledge document ingestion attempts by result.",
    labelnames=("result",),
)

MIN_INGEST_CHARS = 50


class DocumentSourceExtractor(Protocol):
    async def extract_document(self, document: KnowledgeDocument) -> ExtractedText:
        ...


class DocumentRepository(Protocol):
    async def get_document(
        self, document_id: UUID, *, tenant_id: str | None = None
    ) -> KnowledgeDocument | None:
        ...

    async def mark_failed(self, document_id: UUID, error: dict[str, Any]) -> bool:
        ...

    async def finalize_document(
        self,
        document_id: UUID,
        *,
        chunk_count: int,
        content_hash: str,
        keep_hashes: Collection[str],
        page_count: int | None = None,
        mime_type: str | None = None,
    ) -> bool:
        ...

    async def update_catalog_status(
        self,
        document_id: UUID,
        *,
        status: CatalogExtractionStatus,
        error: dict[str, Any] | None = None,
        item_count: int | None = None,
    ) -> None:
        ...


class ChunkWriter(Protocol):
    async def write(self, document: KnowledgeDocument, drafts: Sequence[ChunkDraft]) -> int:
        ...


class CatalogProposer(Protocol):
    async def propose_from_document(
        self, document: KnowledgeDocument, text: str, context: RequestContext
    ) -> int:
        ...


class ProgressPublisher(Protocol):
    async def publish(
        self,
        *,
        context: RequestContext,
        stage: IngestionStage,
        detail: dict[str, object] | None = None,
    ) -> None:
        ...


@dataclass(slots=True, frozen=True)
class IngestionReport:
    document_id: str
    status: str
    chunk_count: int = 0
    skipped: bool = False


class KnowledgeIngestionPipeline:
    """Coordinates ingestion of a single knowledge document.

    Documents that are missing or no longer ``processing`` are skipped, which
    makes redelivered tasks harmless. Failures mark the document ``failed``
    with the error's ``{code, message, retryable}`` and are re-raised for the
    worker to decide on a retry.
    """

    def __init__(
        self,
        *,
        repository: DocumentRepository,
        extractor: DocumentSourceExtractor,
        writer: ChunkWriter,
        progress_publisher: ProgressPublisher,
        catalog: CatalogProposer | None = None,
        chunking_config: ChunkingConfig | None = None,
    ) -> None:
        self._repository = repository
        self._extractor = extractor
        self._writer = writer
        self._progress = progress_publisher
        self._catalog = catalog
        self._chunking_config = chunking_config or ChunkingConfig()

    async def run(
        self, task: KnowledgeIngestTask, context: RequestContext | None = None
    ) -> IngestionReport:
        document_id = str(task.document_id)
        context = (context or RequestContext(tenant_id=task.tenant_id)).for_document(document_id)

        document = await self._repository.get_document(task.document_id, tenant_id=task.tenant_id)
        if document is None:
            logger.warning("document not found; skipping", extra=context.log_fields())
            INGESTION_RESULTS.labels(result="skipped").inc()
            return IngestionReport(document_id=document_id, status="missing", skipped=True)
        if document.status != DocumentStatus.PROCESSING.value:
            logger.info(
                "document not in processing state; skipping",
                extra={**context.log_fields(), "status": document.status},
            )
            INGESTION_RESULTS.labels(result="skipped").inc()
            return IngestionReport(
                document_id=document_id, status=str(document.status), skipped=True
            )

        await self._progress.publish(context=context, stage=IngestionStage.STARTED)
        try:
            with traced("knowledge.ingest", tenant_id=task.tenant_id, document_id=document_id):
                normalized, chunk_count = await self._ingest(document, context)
        except IngestionError as exc:
            await self._fail(document, exc, context)
            raise
        except Exception as exc:
            logger.exception("unexpected error in ingestion pipeline", extra=context.log_fields())
            error = IngestionError("unexpected ingestion failure", retryable=False)
            await self._fail(document, error, context)
            raise error from exc

        INGESTION_RESULTS.labels(result="active").inc()
        await self._progress.publish(
            context=context,
            stage=IngestionStage.COMPLETED,
            detail={"chunks": chunk_count},
        )

        await self._run_catalog_extraction(document, normalized, context)
        return IngestionReport(
            document_id=document_id, status=DocumentStatus.ACTIVE.value, chunk_count=chunk_count
        )

    async def _ingest(
        self, document: KnowledgeDocument, context: RequestContext
    ) -> tuple[str, int]:
        extracted = await self._extractor.extract_document(document)
        normalized = normalize_text(extracted.text)
        if len(normalized) < MIN_INGEST_CHARS:
            raise ContentQualityError("Extracted text too short to ingest")
        await self._progress.publish(
            context=context,
            stage=IngestionStage.EXTRACTED,
            detail={"chars": len(normalized), "source": extracted.source},
        )

        content_hash = sha256_hex(normalized)
        drafts = dedupe_chunks(chunk_text(normalized, self._chunking_config))
        if not drafts:
            raise ContentQualityError("no chunks produced from extracted text")
        await self._progress.publish(
            context=context, stage=IngestionStage.CHUNKED, detail={"chunks": len(drafts)}
        )

        written = await self._writer.write(document, drafts)
        await self._progress.publish(
            context=context, stage=IngestionStage.PERSISTED, detail={"chunks": written}
        )

        finalized = await self._repository.finalize_document(
            document.id,
            chunk_count=len(drafts),
            content_hash=content_hash,
            keep_hashes=[draft.text_hash for draft in drafts],
            page_count=extracted.page_count,
            mime_type=extracted.mime_type,
        )
        if not finalized:
            raise PersistenceError(
                "document left the processing state during ingestion", retryable=False
            )
        logger.info(
            "document finalized",
            extra={**context.log_fields(), "chunks": len(drafts), "content_hash": content_hash},
        )
        return normalized, len(drafts)

    async def _fail(
        self, document: KnowledgeDocument, error: IngestionError, context: RequestContext
    ) -> None:
        await self._repository.mark_failed(document.id, error.as_dict())
        INGESTION_RESULTS.labels(result="failed").inc()
        logger.warning(
            "ingestion failed",
            extra={
                **context.log_fields(),
                "error_code": error.code,
                "error": error.message,
                "retryable": error.retryable,
            },
        )

    async def _run_catalog_extraction(
        self, document: KnowledgeDocument, text: str, context: RequestContext
    ) -> None:
        """Propose catalog items from the ingested text without affecting the document."""

        if not document.extract_catalog or self._catalog is None:
            await self._record_catalog_status(
                document, context, status=CatalogExtractionStatus.SKIPPED
            )
            return

        await self._record_catalog_status(
            document, context, status=CatalogExtractionStatus.PROCESSING
        )
        try:
            item_count = await self._catalog.propose_from_document(document, text, context)
        except Exception as exc:
            logger.exception("catalog extraction failed (non-fatal)", extra=context.log_fields())
            message = getattr(exc, "message", None) or str(exc) or "Extraction failed"
            await self._record_catalog_status(
                document,
                context,
                status=CatalogExtractionStatus.FAILED,
                error={"code": "extract_failed", "message": message},
            )
            return

        await self._record_catalog_status(
            document, context, status=CatalogExtractionStatus.DONE, item_count=item_count
        )
        logger.info(
            "catalog extraction complete",
            extra={**context.log_fields(), "items": item_count},
        )

    async def _record_catalog_status(
        self,
        document: KnowledgeDocument,
        context: RequestContext,
        *,
        status: CatalogExtractionStatus,
        error: dict[str, Any] | None = None,
        item_count: int | None = None,
    ) -> None:
        try:
            await self._repository.update_catalog_status(
                document.id, status=status, error=error, item_count=item_count
            )
        except IngestionError:
            logger.exception(
                "failed to record catalog extraction status",
                extra={**context.log_fields(), "catalog_status": status.value},
            )
