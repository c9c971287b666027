"""Explicit request context passed through ingestion and retrieval calls."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from uuid import uuid4


def _correlation_id() -> str:
    return uuid4().hex


@dataclass(slots=True, frozen=True)
class RequestContext:
    """Identifies the tenant and unit of work a call is performed for."""

    tenant_id: str
    document_id: str | None = None
    job_id: str | None = None
    correlation_id: str = field(default_factory=_correlation_id)

    def for_document(self, document_id: str) -> RequestContext:
        return replace(self, document_id=document_id)

    def for_job(self, job_id: str) -> RequestContext:
        return replace(self, job_id=job_id)

    def log_fields(self) -> dict[str, str]:
        """Return the non-empty identifiers for use as logging ``extra``."""

        fields = {"tenant_id": self.tenant_id, "correlation_id": self.correlation_id}
        if self.document_id:
            fields["document_id"] = self.document_id
        if self.job_id:
            fields["job_id"] = self.job_id
        return fields
