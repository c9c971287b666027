"""SQLModel-backed persistence for knowledge documents and their chunks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from knowledgebase.core.config import LimitsSettings
from knowledgebase.core.db.models import (
    CatalogExtractionStatus,
    ChunkStatus,
    DocumentStatus,
    IngestKind,
    KnowledgeChunk,
    KnowledgeDocument,
    SourceKind,
)
from knowledgebase.core.db.session import SessionFactory
from knowledgebase.core.errors import ConflictError, NotFoundError, ValidationError
from knowledgebase.rag.retrieval import ChunkMatch, cosine_distance

from .errors import DocumentLimitReached, PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(tz=UTC)


class KnowledgeRepository:
    """Document lifecycle and chunk storage.

    Every public method runs a short synchronous session in a worker thread.
    Status transitions are guarded in the ``WHERE`` clause so that concurrent
    or repeated deliveries cannot move a document backwards.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        limits: LimitsSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._limits = limits or LimitsSettings()

    async def _run(self, func_: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(func_, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("knowledge repository operation failed")
            raise PersistenceError("database operation failed") from exc

    # Documents ----------------------------------------------------------

    async def create_document(
        self,
        tenant_id: str,
        *,
        source_kind: SourceKind,
        source_name: str,
        source_text: str | None = None,
        source_url: str | None = None,
        storage_path: str | None = None,
        mime_type: str | None = None,
        extract_catalog: bool = False,
        catalog_kind: IngestKind | None = None,
        catalog_target_id: str | None = None,
    ) -> KnowledgeDocument:
        document = KnowledgeDocument(
            tenant_id=tenant_id,
            source_kind=SourceKind(source_kind).value,
            source_name=source_name,
            source_text=source_text,
            source_url=source_url,
            storage_path=storage_path,
            mime_type=mime_type,
            status=DocumentStatus.PROCESSING.value,
            extract_catalog=extract_catalog,
            catalog_kind=IngestKind(catalog_kind).value if catalog_kind else None,
            catalog_target_id=catalog_target_id,
            catalog_status=(
                CatalogExtractionStatus.PROCESSING.value if extract_catalog else None
            ),
        )
        return await self._run(self._create_document, document)

    def _create_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        with self._session_factory() as session:
            count = session.exec(
                select(func.count())
                .select_from(KnowledgeDocument)
                .where(KnowledgeDocument.tenant_id == document.tenant_id)
            ).one()
            if count >= self._limits.max_docs:
                raise DocumentLimitReached(
                    f"Knowledge doc limit reached ({count}/{self._limits.max_docs})"
                )
            session.add(document)
            session.commit()
            session.refresh(document)
        logger.info(
            "created knowledge document",
            extra={"tenant_id": document.tenant_id, "document_id": str(document.id)},
        )
        return document

    async def get_document(
        self, document_id: UUID, *, tenant_id: str | None = None
    ) -> KnowledgeDocument | None:
        return await self._run(self._get_document, document_id, tenant_id)

    def _get_document(self, document_id: UUID, tenant_id: str | None) -> KnowledgeDocument | None:
        with self._session_factory() as session:
            document = session.get(KnowledgeDocument, document_id)
        if document is None or (tenant_id is not None and document.tenant_id != tenant_id):
            return None
        return document

    async def list_documents(
        self, tenant_id: str, *, status: DocumentStatus | None = None
    ) -> list[KnowledgeDocument]:
        return await self._run(self._list_documents, tenant_id, status)

    def _list_documents(
        self, tenant_id: str, status: DocumentStatus | None
    ) -> list[KnowledgeDocument]:
        statement = select(KnowledgeDocument).where(KnowledgeDocument.tenant_id == tenant_id)
        if status is not None:
            statement = statement.where(KnowledgeDocument.status == DocumentStatus(status).value)
        with self._session_factory() as session:
            return list(session.exec(statement.order_by(KnowledgeDocument.created_at.desc())))

    async def mark_failed(self, document_id: UUID, error: dict[str, Any]) -> bool:
        """Record a failure; only documents still ``processing`` are affected.

        Pending chunks from the failed attempt are dropped and any remaining
        chunks are disabled in the same transaction.
        """

        return await self._run(self._mark_failed, document_id, error)

    def _mark_failed(self, document_id: UUID, error: dict[str, Any]) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(KnowledgeDocument)
                .where(
                    KnowledgeDocument.id == document_id,
                    KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
                )
                .values(status=DocumentStatus.FAILED.value, error=error, updated_at=_now())
            )
            if result.rowcount == 0:
                session.rollback()
                return False
            dropped = session.execute(
                delete(KnowledgeChunk).where(
                    KnowledgeChunk.document_id == document_id,
                    KnowledgeChunk.status == ChunkStatus.PENDING.value,
                )
            ).rowcount
            session.execute(
                update(KnowledgeChunk)
                .where(KnowledgeChunk.document_id == document_id)
                .values(status=ChunkStatus.DISABLED.value)
            )
            session.commit()
        if dropped:
            logger.info(
                "dropped pending chunks of failed document",
                extra={"document_id": str(document_id), "dropped": dropped},
            )
        return True

    async def reopen_document(self, document_id: UUID) -> bool:
        """Move a document whose recorded failure is retryable back to ``processing``."""

        return await self._run(self._reopen_document, document_id)

    def _reopen_document(self, document_id: UUID) -> bool:
        with self._session_factory() as session:
            document = session.get(KnowledgeDocument, document_id)
            if document is None or document.status != DocumentStatus.FAILED.value:
                return False
            if not (document.error or {}).get("retryable"):
                return False
            result = session.execute(
                update(KnowledgeDocument)
                .where(
                    KnowledgeDocument.id == document_id,
                    KnowledgeDocument.status == DocumentStatus.FAILED.value,
                )
                .values(status=DocumentStatus.PROCESSING.value, updated_at=_now())
            )
            session.commit()
        return result.rowcount > 0

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
        """Mark the document ``active``, prune chunks outside ``keep_hashes``
        and activate the rest.

        All of it happens in one transaction. Returns ``False`` when the document
        was no longer ``processing``, in which case nothing is changed.
        """

        values: dict[str, Any] = {
            "status": DocumentStatus.ACTIVE.value,
            "chunk_count": chunk_count,
            "content_hash": content_hash,
            "error": None,
            "updated_at": _now(),
        }
        if page_count is not None:
            values["page_count"] = page_count
        if mime_type:
            values["mime_type"] = mime_type
        return await self._run(self._finalize_document, document_id, values, set(keep_hashes))

    def _finalize_document(
        self, document_id: UUID, values: dict[str, Any], keep_hashes: set[str]
    ) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(KnowledgeDocument)
                .where(
                    KnowledgeDocument.id == document_id,
                    KnowledgeDocument.status == DocumentStatus.PROCESSING.value,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                return False
            stale = delete(KnowledgeChunk).where(KnowledgeChunk.document_id == document_id)
            if keep_hashes:
                stale = stale.where(KnowledgeChunk.content_hash.not_in(keep_hashes))
            pruned = session.execute(stale).rowcount
            session.execute(
                update(KnowledgeChunk)
                .where(KnowledgeChunk.document_id == document_id)
                .values(status=ChunkStatus.ACTIVE.value)
            )
            session.commit()
        if pruned:
            logger.info(
                "pruned stale chunks",
                extra={"document_id": str(document_id), "pruned": pruned},
            )
        return True

    async def set_document_status(
        self, tenant_id: str, document_id: UUID, status: DocumentStatus
    ) -> KnowledgeDocument:
        """Toggle a finished document between ``active`` and ``disabled``."""

        status = DocumentStatus(status)
        if status not in (DocumentStatus.ACTIVE, DocumentStatus.DISABLED):
            raise ValidationError(
                "status must be active or disabled", details={"status": status.value}
            )
        return await self._run(self._set_document_status, tenant_id, document_id, status)

    def _set_document_status(
        self, tenant_id: str, document_id: UUID, status: DocumentStatus
    ) -> KnowledgeDocument:
        chunk_status = (
            ChunkStatus.ACTIVE if status is DocumentStatus.ACTIVE else ChunkStatus.DISABLED
        )
        with self._session_factory() as session:
            document = session.get(KnowledgeDocument, document_id)
            if document is None or document.tenant_id != tenant_id:
                raise NotFoundError(
                    "knowledge document not found", details={"document_id": str(document_id)}
                )
            if document.status not in (DocumentStatus.ACTIVE.value, DocumentStatus.DISABLED.value):
                raise ConflictError(
                    "only active or disabled documents can be toggled",
                    details={"status": document.status},
                )
            document.status = status.value
            document.updated_at = _now()
            session.add(document)
            session.execute(
                update(KnowledgeChunk)
                .where(KnowledgeChunk.document_id == document_id)
                .values(status=chunk_status.value)
            )
            session.commit()
            session.refresh(document)
        return document

    async def delete_document(self, tenant_id: str, document_id: UUID) -> int:
        """Delete a document and its chunks; returns the number of chunks removed."""

        return await self._run(self._delete_document, tenant_id, document_id)

    def _delete_document(self, tenant_id: str, document_id: UUID) -> int:
        with self._session_factory() as session:
            document = session.get(KnowledgeDocument, document_id)
            if document is None or document.tenant_id != tenant_id:
                raise NotFoundError(
                    "knowledge document not found", details={"document_id": str(document_id)}
                )
            removed = session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.document_id == document_id)
            ).rowcount
            session.delete(document)
            session.commit()
        logger.info(
            "deleted knowledge document",
            extra={"tenant_id": tenant_id, "document_id": str(document_id), "chunks": removed},
        )
        return removed

    async def update_catalog_status(
        self,
        document_id: UUID,
        *,
        status: CatalogExtractionStatus,
        error: dict[str, Any] | None = None,
        item_count: int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "catalog_status": CatalogExtractionStatus(status).value,
            "catalog_error": error,
            "updated_at": _now(),
        }
        if item_count is not None:
            values["catalog_item_count"] = item_count
        await self._run(self._update_document, document_id, values)

    def _update_document(self, document_id: UUID, values: dict[str, Any]) -> None:
        with self._session_factory() as session:
            session.execute(
                update(KnowledgeDocument)
                .where(KnowledgeDocument.id == document_id)
                .values(**values)
            )
            session.commit()

    # Chunks -------------------------------------------------------------

    async def count_active_chunks(
        self, tenant_id: str, *, document_id: UUID | None = None
    ) -> int:
        return await self._run(self._count_active_chunks, tenant_id, document_id)

    def _count_active_chunks(self, tenant_id: str, document_id: UUID | None) -> int:
        statement = (
            select(func.count())
            .select_from(KnowledgeChunk)
            .join(KnowledgeDocument, KnowledgeDocument.id == KnowledgeChunk.document_id)
            .where(
                KnowledgeChunk.tenant_id == tenant_id,
                KnowledgeChunk.status == ChunkStatus.ACTIVE.value,
                KnowledgeDocument.status == DocumentStatus.ACTIVE.value,
            )
        )
        if document_id is not None:
            statement = statement.where(KnowledgeChunk.document_id == document_id)
        with self._session_factory() as session:
            return int(session.exec(statement).one())

    async def upsert_chunks(self, chunks: Sequence[KnowledgeChunk]) -> int:
        """Insert or replace chunks keyed by (document id, content hash)."""

        if not chunks:
            return 0
        return await self._run(self._upsert_chunks, list(chunks))

    def _upsert_chunks(self, chunks: list[KnowledgeChunk]) -> int:
        with self._session_factory() as session:
            for chunk in chunks:
                session.merge(chunk)
            session.commit()
        return len(chunks)

    async def list_chunks(self, document_id: UUID) -> list[KnowledgeChunk]:
        return await self._run(self._list_chunks, document_id)

    def _list_chunks(self, document_id: UUID) -> list[KnowledgeChunk]:
        with self._session_factory() as session:
            return list(
                session.exec(
                    select(KnowledgeChunk)
                    .where(KnowledgeChunk.document_id == document_id)
                    .order_by(KnowledgeChunk.chunk_index)
                )
            )

    async def find_nearest_chunks(
        self, tenant_id: str, vector: Sequence[float], limit: int
    ) -> list[ChunkMatch]:
        """Return the ``limit`` active chunks closest to ``vector`` by cosine distance.

        Only chunks of active documents are considered. Chunks embedded with a
        different dimension than ``vector`` are skipped.
        """

        return await self._run(self._find_nearest_chunks, tenant_id, list(vector), limit)

    def _find_nearest_chunks(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[ChunkMatch]:
        with self._session_factory() as session:
            rows = session.exec(
                select(KnowledgeChunk)
                .join(KnowledgeDocument, KnowledgeDocument.id == KnowledgeChunk.document_id)
                .where(
                    KnowledgeChunk.tenant_id == tenant_id,
                    KnowledgeChunk.status == ChunkStatus.ACTIVE.value,
                    KnowledgeDocument.status == DocumentStatus.ACTIVE.value,
                )
            ).all()
        comparable = [row for row in rows if len(row.embedding) == len(vector)]
        if len(comparable) < len(rows):
            logger.warning(
                "skipped chunks with mismatched embedding dimension",
                extra={
                    "tenant_id": tenant_id,
                    "skipped": len(rows) - len(comparable),
                    "dimension": len(vector),
                },
            )
        matches = [
            ChunkMatch(
                document_id=str(row.document_id),
                chunk_id=row.content_hash,
                text=row.text,
                distance=cosine_distance(vector, row.embedding),
                source_name=row.source_name,
            )
            for row in comparable
        ]
        matches.sort(key=lambda match: match.distance)
        return matches[:limit]
