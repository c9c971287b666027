"""Catalog ingest job lifecycle: submit, process into a proposal, review."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any, Protocol
from uuid import UUID

from prometheus_client import Counter

from knowledgebase.core.config import CatalogSettings
from knowledgebase.core.context import RequestContext
from knowledgebase.core.db.models import (
    CatalogItem,
    IngestJob,
    IngestJobStatus,
    IngestKind,
    IngestProposal,
    KnowledgeDocument,
    SourceKind,
)
from knowledgebase.core.errors import NotFoundError, ValidationError
from knowledgebase.extraction.documents import ExtractedText, SourceRef
from knowledgebase.ingestion.errors import ContentQualityError
from knowledgebase.utils.tracing import traced

from .extraction import build_warnings
from .models import (
    INGEST_SOURCES,
    ExtractedItem,
    IngestSource,
    JobSubmission,
    UrlSource,
    dump_sources,
)
from .normalize import (
    StoragePathResolver,
    idempotency_key,
    normalize_catalog_item,
    normalize_sources,
    source_image_url,
)
from .repository import CatalogRepository

logger = logging.getLogger(__name__)

CATALOG_JOB_RESULTS = Counter(
    "catalog_ingest_jobs_total",
    "Catalog ingest job transitions by result.",
    labelnames=("result",),
)

REJECTION_MESSAGE = "Rejected by reviewer"


class SourceExtractor(Protocol):
    async def extract(self, source: SourceRef) -> ExtractedText:
        ...


class StructuredItemExtractor(Protocol):
    async def extract(self, kind: IngestKind, text: str) -> list[ExtractedItem]:
        ...


def _source_ref(source: IngestSource) -> SourceRef:
    if isinstance(source, UrlSource):
        return SourceRef(kind=SourceKind.URL, name=source.url, url=source.url)
    return SourceRef(
        kind=source.to_source_kind(), name=source.storage_path, storage_path=source.storage_path
    )


def _parse_kind(kind: Any) -> IngestKind:
    try:
        return IngestKind(kind)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in IngestKind)
        raise ValidationError(
            f"kind must be one of: {allowed}", details={"kind": str(kind)}
        ) from exc


class CatalogJobService:
    """Turn sources into reviewable item proposals.

    A job moves ``queued -> processing -> needs_review`` and then to
    ``applied`` or, on rejection or any processing error, ``failed``. Failed
    jobs are terminal; resubmitting the same sources creates a new job.
    """

    def __init__(
        self,
        *,
        repository: CatalogRepository,
        extractor: SourceExtractor,
        items: StructuredItemExtractor,
        settings: CatalogSettings | None = None,
        storage_path_from_url: StoragePathResolver | None = None,
    ) -> None:
        self._repository = repository
        self._extractor = extractor
        self._items = items
        self._settings = settings or CatalogSettings()
        self._storage_path_from_url = storage_path_from_url

    async def submit_job(
        self,
        tenant_id: str,
        target_id: str,
        kind: IngestKind | str,
        sources: Iterable[Any],
    ) -> JobSubmission:
        if not target_id:
            raise ValidationError("target_id required")
        ingest_kind = _parse_kind(kind)
        normalized = normalize_sources(
            sources, storage_path_from_url=self._storage_path_from_url
        )
        if not normalized:
            raise ValidationError("At least one source is required")

        key = idempotency_key(tenant_id, target_id, ingest_kind.value, normalized)
        existing = await self._repository.find_reusable_job(tenant_id, key)
        if existing is not None:
            logger.info(
                "reusing catalog ingest job",
                extra={"tenant_id": tenant_id, "job_id": str(existing.id), "status": existing.status},
            )
            return JobSubmission(job_id=existing.id, reused=True)

        job = await self._repository.create_job(
            IngestJob(
                tenant_id=tenant_id,
                target_id=target_id,
                kind=ingest_kind.value,
                sources=dump_sources(normalized),
                idempotency_key=key,
                status=IngestJobStatus.QUEUED.value,
            )
        )
        CATALOG_JOB_RESULTS.labels(result="queued").inc()
        logger.info(
            "catalog ingest job created",
            extra={
                "tenant_id": tenant_id,
                "target_id": target_id,
                "kind": ingest_kind.value,
                "job_id": str(job.id),
                "sources": len(normalized),
            },
        )
        return JobSubmission(job_id=job.id, reused=False)

    async def get_job(self, tenant_id: str, job_id: UUID) -> IngestJob:
        job = await self._repository.get_job(job_id, tenant_id=tenant_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def process_job(
        self, tenant_id: str, job_id: UUID, context: RequestContext | None = None
    ) -> IngestProposal | None:
        """Claim and process a queued job.

        Returns the created proposal, or ``None`` when the job was not
        claimable or processing failed; failures are recorded on the job.
        """

        context = (context or RequestContext(tenant_id=tenant_id)).for_job(str(job_id))
        job = await self._repository.get_job(job_id, tenant_id=tenant_id)
        if job is None:
            logger.warning("catalog ingest job not found", extra=context.log_fields())
            return None
        if not await self._repository.claim_job(job.id):
            logger.info(
                "catalog ingest job already claimed; skipping",
                extra={**context.log_fields(), "status": job.status},
            )
            return None

        try:
            with traced("catalog.process_job", tenant_id=tenant_id, job_id=str(job_id)):
                proposal = await self._build_proposal(job, context)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or "Unknown error"
            logger.exception(
                "catalog ingest job failed",
                extra={**context.log_fields(), "error": message},
            )
            await self._repository.fail_job(job.id, message)
            CATALOG_JOB_RESULTS.labels(result="failed").inc()
            return None

        CATALOG_JOB_RESULTS.labels(result="needs_review").inc()
        logger.info(
            "catalog proposal created",
            extra={
                **context.log_fields(),
                "proposal_id": str(proposal.id),
                "items": len(proposal.extracted_items),
                "warnings": proposal.warnings,
            },
        )
        return proposal

    async def _build_proposal(self, job: IngestJob, context: RequestContext) -> IngestProposal:
        sources = INGEST_SOURCES.validate_python(job.sources)
        texts = await asyncio.gather(
            *(self._extractor.extract(_source_ref(source)) for source in sources)
        )
        combined = "\n\n".join(text.text for text in texts if text.text).strip()
        logger.info(
            "catalog source text extracted",
            extra={**context.log_fields(), "chars": len(combined)},
        )
        if len(combined) < self._settings.min_source_chars:
            raise ContentQualityError("Extracted text too short")

        kind = IngestKind(job.kind)
        items = await self._items.extract(kind, combined)
        proposal = IngestProposal(
            tenant_id=job.tenant_id,
            target_id=job.target_id,
            job_id=job.id,
            kind=kind.value,
            sources=job.sources,
            extracted_items=[item.model_dump() for item in items],
            warnings=build_warnings(items),
            diff_summary={"added": len(items), "updated": 0, "removed": 0},
        )
        return await self._repository.create_proposal_for_job(job.id, proposal)

    async def propose_from_document(
        self, document: KnowledgeDocument, text: str, context: RequestContext
    ) -> int:
        """Create a proposal from an ingested document's text; returns the item count."""

        kind = IngestKind(document.catalog_kind or IngestKind.MENU_ITEMS)
        items = await self._items.extract(kind, text)
        sources = [{"type": "document", "documentId": str(document.id)}]
        if document.source_url:
            sources = [{"type": "url", "url": document.source_url}]
        proposal = await self._repository.create_proposal(
            IngestProposal(
                tenant_id=document.tenant_id,
                target_id=document.catalog_target_id or document.tenant_id,
                document_id=document.id,
                kind=kind.value,
                sources=sources,
                extracted_items=[item.model_dump() for item in items],
                warnings=build_warnings(items),
                diff_summary={"added": len(items), "updated": 0, "removed": 0},
            )
        )
        logger.info(
            "catalog proposal created from document",
            extra={**context.log_fields(), "proposal_id": str(proposal.id), "items": len(items)},
        )
        return len(items)

    async def apply_proposal(self, tenant_id: str, proposal_id: UUID) -> int:
        proposal = await self._require_proposal(tenant_id, proposal_id)
        image_url = source_image_url(proposal.sources)
        items = [
            CatalogItem(
                target_id=proposal.target_id,
                kind=str(proposal.kind),
                tenant_id=proposal.tenant_id,
                source_job_id=proposal.job_id,
                **normalize_catalog_item(
                    item,
                    index,
                    str(proposal.kind),
                    image_url=image_url,
                    default_currency=self._settings.default_currency,
                ),
            )
            for index, item in enumerate(proposal.extracted_items)
        ]
        written = await self._repository.apply_proposal(proposal, items)
        CATALOG_JOB_RESULTS.labels(result="applied").inc()
        logger.info(
            "catalog proposal applied",
            extra={"tenant_id": tenant_id, "proposal_id": str(proposal_id), "items": written},
        )
        return written

    async def reject_proposal(self, tenant_id: str, proposal_id: UUID) -> None:
        proposal = await self._require_proposal(tenant_id, proposal_id)
        await self._repository.reject_proposal(proposal, REJECTION_MESSAGE)
        CATALOG_JOB_RESULTS.labels(result="rejected").inc()
        logger.info(
            "catalog proposal rejected",
            extra={"tenant_id": tenant_id, "proposal_id": str(proposal_id)},
        )

    async def list_items(self, target_id: str, kind: IngestKind | str) -> Sequence[CatalogItem]:
        return await self._repository.list_items(target_id, _parse_kind(kind).value)

    async def _require_proposal(self, tenant_id: str, proposal_id: UUID) -> IngestProposal:
        proposal = await self._repository.get_proposal(proposal_id, tenant_id=tenant_id)
        if proposal is None:
            raise NotFoundError("Proposal not found", details={"proposal_id": str(proposal_id)})
        return proposal
