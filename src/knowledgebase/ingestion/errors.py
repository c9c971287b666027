"""Exception taxonomy for fetching, extraction and ingestion failures.

Every error carries a stable ``code`` persisted on the document or job and a
``retryable`` flag the worker consults before scheduling another attempt.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base exception providing retry metadata."""

    code = "ingest_failed"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message

    def as_dict(self) -> dict[str, str | bool]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class UrlNotAllowed(IngestionError):
    """Raised when a URL or redirect hop violates the fetch policy."""

    code = "url_not_allowed"
    retryable = False


class TooLarge(IngestionError):
    """Raised when a response or upload exceeds its byte budget."""

    code = "too_large"
    retryable = False


class TooManyPages(IngestionError):
    code = "too_many_pages"
    retryable = False


class CapExceeded(IngestionError):
    """Raised when writing chunks would exceed the tenant's chunk cap."""

    code = "cap_exceeded"
    retryable = False


class DocumentLimitReached(IngestionError):
    """Raised when a tenant already holds the maximum number of documents."""

    code = "document_limit_reached"
    retryable = False


class FetchFailed(IngestionError):
    """Raised for network failures and non-success upstream responses."""

    code = "fetch_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        if retryable is None:
            retryable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class FetchTimeout(IngestionError):
    code = "timeout"


class ExtractionFailed(IngestionError):
    """Raised when a source yields no usable content.

    ``outcome`` holds the extraction classification (for example
    ``blocked_403`` or ``js_shell_detected``) when one applies.
    """

    code = "extraction_failed"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        outcome: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, code=outcome)
        self.outcome = outcome


class MissingSourceField(IngestionError):
    code = "missing_source_field"
    retryable = False


class ContentQualityError(IngestionError):
    """Raised when extracted or generated content is unusable."""

    code = "content_quality"
    retryable = False


class EmbeddingError(IngestionError):
    code = "embedding_failed"


class GenerationError(IngestionError):
    code = "generation_failed"


class PersistenceError(IngestionError):
    code = "persistence_failed"
