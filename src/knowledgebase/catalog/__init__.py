"""Catalog ingest: sources to reviewable item proposals to catalog items."""

from .errors import ProposalStateError
from .extraction import ItemExtractor, build_extraction_prompt, parse_items
from .jobs import CatalogJobService
from .models import ExtractedItem, ImageSource, IngestSource, JobSubmission, PdfSource, UrlSource
from .normalize import idempotency_key, normalize_catalog_item, normalize_sources
from .repository import CatalogRepository

__all__ = [
    "CatalogJobService",
    "CatalogRepository",
    "ExtractedItem",
    "ImageSource",
    "IngestSource",
    "ItemExtractor",
    "JobSubmission",
    "PdfSource",
    "ProposalStateError",
    "UrlSource",
    "build_extraction_prompt",
    "idempotency_key",
    "normalize_catalog_item",
    "normalize_sources",
    "parse_items",
]
