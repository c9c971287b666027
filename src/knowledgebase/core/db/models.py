"""SQLModel declarative models for knowledge and catalog records."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text, func
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def created_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
        ),
    )


def updated_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
    )


class UUIDPrimaryKey(SQLModel, table=False):
    """Mixin providing a UUID primary key."""

    id: UUID = Field(default_factory=uuid4, primary_key=True, nullable=False)


class SourceKind(str, Enum):
    """Kinds of content a knowledge document can be created from."""

    TEXT = "text"
    URL = "url"
    PDF = "pdf"
    IMAGE = "image"
    FILE = "file"


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    ACTIVE = "active"
    FAILED = "failed"
    DISABLED = "disabled"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISABLED = "disabled"


class CatalogExtractionStatus(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class IngestKind(str, Enum):
    """Catalog collections that structured extraction can target."""

    MENU_ITEMS = "menu_items"
    SERVICES = "services"
    OFFERINGS = "offerings"
    TICKETS = "tickets"
    ROOM_TYPES = "room_types"


class IngestJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    NEEDS_REVIEW = "needs_review"
    APPLIED = "applied"
    FAILED = "failed"


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    REJECTED = "rejected"


class KnowledgeDocument(UUIDPrimaryKey, table=True):
    """A tenant-owned source of knowledge and its ingestion lifecycle."""

    __tablename__ = "knowledge_documents"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=128), nullable=False, index=True))
    source_kind: SourceKind = Field(sa_column=Column(String(length=16), nullable=False))
    source_name: str = Field(sa_column=Column(String(length=255), nullable=False))
    source_text: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    storage_path: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    mime_type: str | None = Field(
        default=None, sa_column=Column(String(length=128), nullable=True)
    )
    status: DocumentStatus = Field(
        default=DocumentStatus.PROCESSING,
        sa_column=Column(
            String(length=16),
            nullable=False,
            default=DocumentStatus.PROCESSING.value,
        ),
    )
    chunk_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    content_hash: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    page_count: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    error: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))

    extract_catalog: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    catalog_kind: IngestKind | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    catalog_target_id: str | None = Field(
        default=None, sa_column=Column(String(length=128), nullable=True)
    )
    catalog_status: CatalogExtractionStatus | None = Field(
        default=None, sa_column=Column(String(length=16), nullable=True)
    )
    catalog_error: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    catalog_item_count: int | None = Field(
        default=None, sa_column=Column(Integer, nullable=True)
    )


class KnowledgeChunk(SQLModel, table=True):
    """Embedded chunk of a document, identified by its content hash."""

    __tablename__ = "knowledge_chunks"

    document_id: UUID = Field(
        foreign_key="knowledge_documents.id", primary_key=True, nullable=False
    )
    content_hash: str = Field(primary_key=True, max_length=64, nullable=False)

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=128), nullable=False, index=True))
    chunk_index: int = Field(sa_column=Column(Integer, nullable=False))
    text: str = Field(sa_column=Column(Text, nullable=False))
    status: ChunkStatus = Field(
        default=ChunkStatus.PENDING,
        sa_column=Column(String(length=16), nullable=False, default=ChunkStatus.PENDING.value),
    )
    embedding: list[float] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    source_name: str = Field(sa_column=Column(String(length=255), nullable=False))
    source_kind: SourceKind = Field(sa_column=Column(String(length=16), nullable=False))


class IngestJob(UUIDPrimaryKey, table=True):
    """Structured extraction request moving toward a reviewable proposal."""

    __tablename__ = "catalog_ingest_jobs"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=128), nullable=False, index=True))
    target_id: str = Field(sa_column=Column(String(length=128), nullable=False))
    kind: IngestKind = Field(sa_column=Column(String(length=32), nullable=False))
    sources: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    idempotency_key: str = Field(
        sa_column=Column(String(length=64), nullable=False, index=True)
    )
    status: IngestJobStatus = Field(
        default=IngestJobStatus.QUEUED,
        sa_column=Column(
            String(length=16), nullable=False, default=IngestJobStatus.QUEUED.value
        ),
    )
    proposal_id: UUID | None = Field(default=None, nullable=True)
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class IngestProposal(UUIDPrimaryKey, table=True):
    """Candidate items awaiting an apply or reject decision."""

    __tablename__ = "catalog_ingest_proposals"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=128), nullable=False, index=True))
    target_id: str = Field(sa_column=Column(String(length=128), nullable=False))
    job_id: UUID | None = Field(default=None, foreign_key="catalog_ingest_jobs.id")
    document_id: UUID | None = Field(default=None, nullable=True)
    kind: IngestKind = Field(sa_column=Column(String(length=32), nullable=False))
    sources: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    status: ProposalStatus = Field(
        default=ProposalStatus.PROPOSED,
        sa_column=Column(
            String(length=16), nullable=False, default=ProposalStatus.PROPOSED.value
        ),
    )
    extracted_items: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    warnings: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    diff_summary: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    applied_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    rejected_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class CatalogItem(SQLModel, table=True):
    """Item in a target's catalog collection, written when a proposal is applied."""

    __tablename__ = "catalog_items"

    target_id: str = Field(primary_key=True, max_length=128)
    kind: str = Field(primary_key=True, max_length=32)
    id: str = Field(primary_key=True, max_length=32)

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=128), nullable=False, index=True))
    name: str = Field(sa_column=Column(String(length=255), nullable=False))
    description: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    price: float = Field(default=0.0, sa_column=Column(Float, nullable=False, default=0.0))
    currency: str = Field(sa_column=Column(String(length=8), nullable=False))
    category: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    available: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))
    image_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    sort_order: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    source_job_id: UUID | None = Field(default=None, nullable=True)
