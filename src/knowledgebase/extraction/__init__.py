"""Content extraction tiers for untrusted pages, PDFs and images."""

from .documents import DocumentExtractor, ExtractedText, SourceRef, normalize_text
from .headless import BrowserlessRenderer, HeadlessOutcome, HeadlessResult
from .models import ExtractionOutcome, ExtractionResult, LinkCandidate, outcome_message
from .tiered import TieredExtractor
from .understanding import OpenAIDocumentUnderstanding

__all__ = [
    "BrowserlessRenderer",
    "DocumentExtractor",
    "ExtractedText",
    "ExtractionOutcome",
    "ExtractionResult",
    "HeadlessOutcome",
    "HeadlessResult",
    "LinkCandidate",
    "OpenAIDocumentUnderstanding",
    "SourceRef",
    "TieredExtractor",
    "normalize_text",
    "outcome_message",
]
