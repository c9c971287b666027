from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from knowledgebase.core.config import LimitsSettings
from knowledgebase.core.db import models  # noqa: F401
from knowledgebase.core.db.models import (
    CatalogExtractionStatus,
    ChunkStatus,
    DocumentStatus,
    KnowledgeChunk,
    KnowledgeDocument,
    SourceKind,
)
from knowledgebase.core.db.session import session_factory
from knowledgebase.core.errors import ConflictError, NotFoundError, ValidationError
from knowledgebase.ingestion.errors import DocumentLimitReached
from knowledgebase.ingestion.repository import KnowledgeRepository

pytestmark = pytest.mark.unit


@pytest.fixture
def repository() -> KnowledgeRepository:
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    return KnowledgeRepository(session_factory(engine), limits=LimitsSettings(max_docs=2))


async def create_text_document(
    repository: KnowledgeRepository, tenant_id: str = "tenant-a"
) -> KnowledgeDocument:
    return await repository.create_document(
        tenant_id,
        source_kind=SourceKind.TEXT,
        source_name="hours.txt",
        source_text="We are open every day from nine to five.",
    )


def chunk(
    document: KnowledgeDocument,
    content_hash: str,
    vector: list[float],
    index: int = 0,
    status: ChunkStatus = ChunkStatus.PENDING,
):
    return KnowledgeChunk(
        document_id=document.id,
        content_hash=content_hash,
        tenant_id=document.tenant_id,
        chunk_index=index,
        text=f"chunk {content_hash}",
        status=status.value,
        embedding=vector,
        source_name=document.source_name,
        source_kind=document.source_kind,
    )


@pytest.mark.asyncio
async def test_create_document_starts_processing(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)

    stored = await repository.get_document(document.id, tenant_id="tenant-a")

    assert stored is not None
    assert stored.status == DocumentStatus.PROCESSING.value
    assert stored.catalog_status is None
    assert await repository.get_document(document.id, tenant_id="tenant-b") is None


@pytest.mark.asyncio
async def test_document_limit_is_per_tenant(repository: KnowledgeRepository) -> None:
    await create_text_document(repository)
    await create_text_document(repository)

    with pytest.raises(DocumentLimitReached, match=r"\(2/2\)"):
        await create_text_document(repository)

    await create_text_document(repository, tenant_id="tenant-b")


@pytest.mark.asyncio
async def test_extract_catalog_documents_start_catalog_processing(
    repository: KnowledgeRepository,
) -> None:
    document = await repository.create_document(
        "tenant-a",
        source_kind=SourceKind.URL,
        source_name="menu",
        source_url="https://example.com/menu",
        extract_catalog=True,
    )

    assert document.catalog_status == CatalogExtractionStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_mark_failed_only_affects_processing_documents(
    repository: KnowledgeRepository,
) -> None:
    document = await create_text_document(repository)
    error = {"code": "fetch_failed", "message": "HTTP 503", "retryable": True}

    assert await repository.mark_failed(document.id, error)
    assert not await repository.mark_failed(document.id, error)

    stored = await repository.get_document(document.id)
    assert stored.status == DocumentStatus.FAILED.value
    assert stored.error == error


@pytest.mark.asyncio
async def test_reopen_requires_retryable_failure(repository: KnowledgeRepository) -> None:
    retryable = await create_text_document(repository)
    permanent = await create_text_document(repository)
    await repository.mark_failed(retryable.id, {"code": "timeout", "retryable": True})
    await repository.mark_failed(permanent.id, {"code": "too_large", "retryable": False})

    assert await repository.reopen_document(retryable.id)
    assert not await repository.reopen_document(permanent.id)
    assert not await repository.reopen_document(uuid4())

    stored = await repository.get_document(retryable.id)
    assert stored.status == DocumentStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_finalize_activates_and_prunes_stale_chunks(
    repository: KnowledgeRepository,
) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks(
        [chunk(document, "keep", [1.0, 0.0]), chunk(document, "stale", [0.0, 1.0], index=1)]
    )

    finalized = await repository.finalize_document(
        document.id, chunk_count=1, content_hash="abc", keep_hashes=["keep"], page_count=2
    )

    assert finalized
    stored = await repository.get_document(document.id)
    assert stored.status == DocumentStatus.ACTIVE.value
    assert stored.chunk_count == 1
    assert stored.content_hash == "abc"
    assert stored.page_count == 2
    chunks = await repository.list_chunks(document.id)
    assert [item.content_hash for item in chunks] == ["keep"]
    assert chunks[0].status == ChunkStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_finalize_is_a_no_op_outside_processing(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks([chunk(document, "old", [1.0], status=ChunkStatus.ACTIVE)])
    await repository.mark_failed(document.id, {"code": "x", "retryable": False})

    assert not await repository.finalize_document(
        document.id, chunk_count=0, content_hash="abc", keep_hashes=[]
    )
    chunks = await repository.list_chunks(document.id)
    assert [item.status for item in chunks] == [ChunkStatus.DISABLED.value]


@pytest.mark.asyncio
async def test_upsert_chunks_replaces_same_hash(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)

    await repository.upsert_chunks([chunk(document, "h1", [1.0])])
    await repository.upsert_chunks([chunk(document, "h1", [2.0])])

    chunks = await repository.list_chunks(document.id)
    assert len(chunks) == 1
    assert chunks[0].embedding == [2.0]
    assert await repository.count_active_chunks("tenant-a") == 0

    await repository.finalize_document(
        document.id, chunk_count=1, content_hash="abc", keep_hashes=["h1"]
    )
    assert await repository.count_active_chunks("tenant-a") == 1


@pytest.mark.asyncio
async def test_set_status_cascades_to_chunks(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks([chunk(document, "h1", [1.0])])
    await repository.finalize_document(
        document.id, chunk_count=1, content_hash="abc", keep_hashes=["h1"]
    )

    disabled = await repository.set_document_status("tenant-a", document.id, DocumentStatus.DISABLED)

    assert disabled.status == DocumentStatus.DISABLED.value
    assert await repository.count_active_chunks("tenant-a") == 0
    assert await repository.find_nearest_chunks("tenant-a", [1.0], 5) == []

    await repository.set_document_status("tenant-a", document.id, DocumentStatus.ACTIVE)
    assert await repository.count_active_chunks("tenant-a") == 1


@pytest.mark.asyncio
async def test_set_status_rejects_invalid_transitions(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)

    with pytest.raises(ValidationError):
        await repository.set_document_status("tenant-a", document.id, DocumentStatus.FAILED)
    with pytest.raises(ConflictError):
        await repository.set_document_status("tenant-a", document.id, DocumentStatus.DISABLED)
    with pytest.raises(NotFoundError):
        await repository.set_document_status("tenant-b", document.id, DocumentStatus.DISABLED)


@pytest.mark.asyncio
async def test_delete_document_removes_chunks(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks([chunk(document, "h1", [1.0]), chunk(document, "h2", [0.5])])

    with pytest.raises(NotFoundError):
        await repository.delete_document("tenant-b", document.id)

    assert await repository.delete_document("tenant-a", document.id) == 2
    assert await repository.get_document(document.id) is None
    assert await repository.list_chunks(document.id) == []


@pytest.mark.asyncio
async def test_update_catalog_status(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)

    await repository.update_catalog_status(
        document.id, status=CatalogExtractionStatus.DONE, item_count=7
    )

    stored = await repository.get_document(document.id)
    assert stored.catalog_status == CatalogExtractionStatus.DONE.value
    assert stored.catalog_item_count == 7
    assert stored.catalog_error is None


@pytest.mark.asyncio
async def test_nearest_chunks_are_tenant_scoped_and_ordered(
    repository: KnowledgeRepository,
) -> None:
    mine = await create_text_document(repository)
    theirs = await create_text_document(repository, tenant_id="tenant-b")
    await repository.upsert_chunks(
        [
            chunk(mine, "far", [0.0, 1.0]),
            chunk(mine, "near", [1.0, 0.1], index=1),
            chunk(theirs, "other", [1.0, 0.0]),
        ]
    )
    await repository.finalize_document(
        mine.id, chunk_count=2, content_hash="mine", keep_hashes=["far", "near"]
    )
    await repository.finalize_document(
        theirs.id, chunk_count=1, content_hash="theirs", keep_hashes=["other"]
    )

    matches = await repository.find_nearest_chunks("tenant-a", [1.0, 0.0], 5)

    assert [match.chunk_id for match in matches] == ["near", "far"]
    assert matches[0].document_id == str(mine.id)
    assert matches[0].source_name == "hours.txt"
    assert matches[0].distance < matches[1].distance


@pytest.mark.asyncio
async def test_failed_documents_lose_pending_chunks(repository: KnowledgeRepository) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks([chunk(document, "partial", [1.0, 0.0])])

    assert await repository.mark_failed(
        document.id, {"code": "embedding_failed", "message": "down", "retryable": True}
    )

    assert await repository.list_chunks(document.id) == []
    assert await repository.find_nearest_chunks("tenant-a", [1.0, 0.0], 5) == []


@pytest.mark.asyncio
async def test_nearest_chunks_only_come_from_active_documents(
    repository: KnowledgeRepository,
) -> None:
    processing = await create_text_document(repository)
    await repository.upsert_chunks([chunk(processing, "h1", [1.0, 0.0], status=ChunkStatus.ACTIVE)])

    assert await repository.find_nearest_chunks("tenant-a", [1.0, 0.0], 5) == []
    assert await repository.count_active_chunks("tenant-a") == 0


@pytest.mark.asyncio
async def test_nearest_chunks_skip_other_embedding_dimensions(
    repository: KnowledgeRepository,
) -> None:
    document = await create_text_document(repository)
    await repository.upsert_chunks(
        [chunk(document, "openai", [1.0, 0.0]), chunk(document, "local", [1.0, 0.0, 0.0], index=1)]
    )
    await repository.finalize_document(
        document.id, chunk_count=2, content_hash="abc", keep_hashes=["openai", "local"]
    )

    matches = await repository.find_nearest_chunks("tenant-a", [1.0, 0.0], 5)

    assert [match.chunk_id for match in matches] == ["openai"]
