"""Queue payloads and progress vocabulary for ingestion work."""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class IngestionStage(str, Enum):
    """Lifecycle stages reported over the progress channel."""

    STARTED = "started"
    EXTRACTED = "extracted"
    CHUNKED = "chunked"
    PERSISTED = "persisted"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    FAILED = "failed"


class KnowledgeIngestTask(BaseModel):
    """Payload for ``process_knowledge_document``."""

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
    document_id: UUID = Field(..., alias="documentId")

    model_config = ConfigDict(populate_by_name=True)


class CatalogJobTask(BaseModel):
    """Payload for ``process_catalog_job``."""

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
    job_id: UUID = Field(..., alias="jobId")

    model_config = ConfigDict(populate_by_name=True)
