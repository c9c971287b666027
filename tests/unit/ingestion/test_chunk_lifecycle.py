from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from knowledgebase.core.db import models  # noqa: F401
from knowledgebase.core.db.models import ChunkStatus, DocumentStatus, KnowledgeDocument, SourceKind
from knowledgebase.core.db.session import session_factory
from knowledgebase.extraction.documents import ExtractedText
from knowledgebase.ingestion.errors import EmbeddingError
from knowledgebase.ingestion.models import KnowledgeIngestTask
from knowledgebase.ingestion.pipeline import KnowledgeIngestionPipeline
from knowledgebase.ingestion.redis import NullProgressPublisher
from knowledgebase.ingestion.repository import KnowledgeRepository
from knowledgebase.ingestion.store_writer import ChunkStoreWriter
from knowledgebase.rag.chunking import chunk_and_dedupe

pytestmark = pytest.mark.unit

# 3,000 chars without periods or newlines: three windows at 1,200/150.
SOURCE_TEXT = "".join(f"{index:05d}" for index in range(600))


class FlakyEmbedder:
    """Embeds by text length and fails on the ``fail_on``-th call."""

    def __init__(self, fail_on: int | None = None) -> None:
        self.fail_on = fail_on
        self.calls = 0

    async def embed_one(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail_on is not None and self.calls == self.fail_on:
            raise EmbeddingError("embedding provider unavailable")
        return [float(len(text)), 1.0]


class TextExtractor:
    async def extract_document(self, document: KnowledgeDocument) -> ExtractedText:
        return ExtractedText(text=document.source_text or "", mime_type="text/plain", source="text")


@pytest.fixture
def repository() -> KnowledgeRepository:
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    return KnowledgeRepository(session_factory(engine))


def build_pipeline(
    repository: KnowledgeRepository, embedder: FlakyEmbedder
) -> KnowledgeIngestionPipeline:
    writer = ChunkStoreWriter(store=repository, embedder=embedder, max_chunks=500, batch_size=1)
    return KnowledgeIngestionPipeline(
        repository=repository,
        extractor=TextExtractor(),
        writer=writer,
        progress_publisher=NullProgressPublisher(),
    )


async def create_document(repository: KnowledgeRepository) -> KnowledgeDocument:
    return await repository.create_document(
        "tenant-a",
        source_kind=SourceKind.TEXT,
        source_name="policies.txt",
        source_text=SOURCE_TEXT,
    )


def task_for(document: KnowledgeDocument) -> KnowledgeIngestTask:
    return KnowledgeIngestTask(tenant_id=document.tenant_id, document_id=document.id)


@pytest.mark.asyncio
async def test_partial_write_of_failed_run_is_not_retrievable(
    repository: KnowledgeRepository,
) -> None:
    document = await create_document(repository)
    pipeline = build_pipeline(repository, FlakyEmbedder(fail_on=2))

    with pytest.raises(EmbeddingError):
        await pipeline.run(task_for(document))

    stored = await repository.get_document(document.id)
    assert stored.status == DocumentStatus.FAILED.value
    assert stored.error["code"] == "embedding_failed"
    assert await repository.count_active_chunks("tenant-a") == 0
    assert await repository.find_nearest_chunks("tenant-a", [1200.0, 1.0], 5) == []
    assert await repository.list_chunks(document.id) == []


@pytest.mark.asyncio
async def test_chunks_stay_pending_until_finalized(repository: KnowledgeRepository) -> None:
    document = await create_document(repository)
    writer = ChunkStoreWriter(store=repository, embedder=FlakyEmbedder(), max_chunks=500)

    written = await writer.write(document, chunk_and_dedupe(SOURCE_TEXT))

    assert written == 3
    chunks = await repository.list_chunks(document.id)
    assert {chunk.status for chunk in chunks} == {ChunkStatus.PENDING.value}
    assert await repository.count_active_chunks("tenant-a") == 0


@pytest.mark.asyncio
async def test_retried_ingest_keeps_three_active_chunks(repository: KnowledgeRepository) -> None:
    document = await create_document(repository)

    with pytest.raises(EmbeddingError):
        await build_pipeline(repository, FlakyEmbedder(fail_on=3)).run(task_for(document))
    assert await repository.reopen_document(document.id)

    report = await build_pipeline(repository, FlakyEmbedder()).run(task_for(document))

    assert report.status == DocumentStatus.ACTIVE.value
    assert report.chunk_count == 3
    stored = await repository.get_document(document.id)
    assert stored.chunk_count == 3
    assert stored.error is None
    assert await repository.count_active_chunks("tenant-a") == 3
    assert await repository.count_active_chunks("tenant-a", document_id=document.id) == 3

    redelivered = await build_pipeline(repository, FlakyEmbedder()).run(task_for(document))

    assert redelivered.skipped
    assert await repository.count_active_chunks("tenant-a") == 3
    assert len(await repository.find_nearest_chunks("tenant-a", [1200.0, 1.0], 20)) == 3
