"""Pydantic shapes for catalog ingest sources and extracted items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from knowledgebase.core.db.models import SourceKind


class UrlSource(BaseModel):
    type: Literal["url"] = "url"
    url: str = Field(..., min_length=1)

    def to_source_kind(self) -> SourceKind:
        return SourceKind.URL


class PdfSource(BaseModel):
    type: Literal["pdf"] = "pdf"
    storage_path: str = Field(..., min_length=1, alias="storagePath")

    model_config = ConfigDict(populate_by_name=True)

    def to_source_kind(self) -> SourceKind:
        return SourceKind.PDF


class ImageSource(BaseModel):
    type: Literal["image"] = "image"
    storage_path: str = Field(..., min_length=1, alias="storagePath")

    model_config = ConfigDict(populate_by_name=True)

    def to_source_kind(self) -> SourceKind:
        return SourceKind.IMAGE


IngestSource = Annotated[UrlSource | PdfSource | ImageSource, Field(discriminator="type")]
INGEST_SOURCES = TypeAdapter(list[IngestSource])


def dump_sources(sources: list[IngestSource]) -> list[dict[str, Any]]:
    return [source.model_dump(by_alias=True) for source in sources]


class ExtractedItem(BaseModel):
    """Candidate item proposed by the extraction model, before normalization."""

    id: str
    name: str
    description: str | None = None
    price: float | None = None
    currency: str | None = None
    category: str | None = None
    available: bool = True


@dataclass(slots=True, frozen=True)
class JobSubmission:
    job_id: UUID
    reused: bool
