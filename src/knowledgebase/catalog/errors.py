"""Catalog review errors."""

from __future__ import annotations

from knowledgebase.core.errors import ConflictError


class ProposalStateError(ConflictError):
    """Raised when a proposal is applied or rejected after it left ``proposed``."""

    def __init__(self, proposal_id: str, status: str) -> None:
        super().__init__(
            f"Proposal already {status}",
            details={"proposal_id": proposal_id, "status": status},
        )
        self.status = status
