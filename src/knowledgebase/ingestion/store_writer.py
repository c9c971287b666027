"""Embed deduplicated chunks and persist them under the tenant chunk cap."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Protocol
from uuid import UUID

from prometheus_client import Counter, Histogram

from knowledgebase.core.db.models import ChunkStatus, KnowledgeChunk, KnowledgeDocument
from knowledgebase.rag.chunking import ChunkDraft

from .errors import CapExceeded, EmbeddingError

logger = logging.getLogger(__name__)

CHUNKS_WRITTEN = Counter(
    "knowledge_chunks_written_total",
    "Chunks embedded and persisted.",
)
EMBED_LATENCY = Histogram(
    "knowledge_embed_seconds",
    "Time spent embedding the chunks of one document.",
)

DEFAULT_BATCH_SIZE = 75


class ChunkEmbedder(Protocol):
    async def embed_one(self, text: str) -> list[float]:
        ...


class ChunkStore(Protocol):
    async def count_active_chunks(
        self, tenant_id: str, *, document_id: UUID | None = None
    ) -> int:
        ...

    async def upsert_chunks(self, chunks: Sequence[KnowledgeChunk]) -> int:
        ...


class ChunkStoreWriter:
    """Write a document's chunks after checking the tenant's chunk cap.

    Chunks are keyed by (document id, content hash) so a retried batch
    overwrites rather than duplicates. They are written ``pending`` and only
    become retrievable when the repository finalizes the document.
    """

    def __init__(
        self,
        *,
        store: ChunkStore,
        embedder: ChunkEmbedder,
        max_chunks: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")
        self._store = store
        self._embedder = embedder
        self._max_chunks = max_chunks
        self._batch_size = batch_size

    async def write(self, document: KnowledgeDocument, drafts: Sequence[ChunkDraft]) -> int:
        await self.check_capacity(document, len(drafts))

        started = time.perf_counter()
        buffered: list[KnowledgeChunk] = []
        written = 0
        for draft in drafts:
            embedding = await self._embedder.embed_one(draft.text)
            if not embedding:
                raise EmbeddingError(f"empty embedding for chunk {draft.index}")
            buffered.append(
                KnowledgeChunk(
                    document_id=document.id,
                    content_hash=draft.text_hash,
                    tenant_id=document.tenant_id,
                    chunk_index=draft.index,
                    text=draft.text,
                    status=ChunkStatus.PENDING.value,
                    embedding=embedding,
                    source_name=document.source_name,
                    source_kind=document.source_kind,
                )
            )
            if len(buffered) >= self._batch_size:
                written += await self._store.upsert_chunks(buffered)
                buffered = []

        if buffered:
            written += await self._store.upsert_chunks(buffered)

        elapsed = time.perf_counter() - started
        EMBED_LATENCY.observe(elapsed)
        CHUNKS_WRITTEN.inc(written)
        logger.info(
            "embedded and wrote chunks",
            extra={
                "document_id": str(document.id),
                "chunks": written,
                "embed_latency_ms": round(elapsed * 1000),
            },
        )
        return written

    async def check_capacity(self, document: KnowledgeDocument, incoming: int) -> None:
        """Raise :class:`CapExceeded` if ``incoming`` chunks would breach the cap.

        The document's own active chunks are excluded so that re-ingesting a
        document replaces rather than adds to its share.
        """

        total = await self._store.count_active_chunks(document.tenant_id)
        own = await self._store.count_active_chunks(document.tenant_id, document_id=document.id)
        others = max(0, total - own)
        if others + incoming > self._max_chunks:
            raise CapExceeded(
                f"Chunk limit exceeded: {others}+{incoming} > {self._max_chunks}"
            )
