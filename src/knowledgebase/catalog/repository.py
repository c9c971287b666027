"""SQLModel persistence for catalog ingest jobs, proposals and items."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from knowledgebase.core.db.models import (
    CatalogItem,
    IngestJob,
    IngestJobStatus,
    IngestProposal,
    ProposalStatus,
)
from knowledgebase.core.db.session import SessionFactory
from knowledgebase.core.errors import ConflictError, NotFoundError
from knowledgebase.ingestion.errors import PersistenceError

from .errors import ProposalStateError

logger = logging.getLogger(__name__)

T = TypeVar("T")

REUSABLE_JOB_STATUSES = (
    IngestJobStatus.QUEUED.value,
    IngestJobStatus.PROCESSING.value,
    IngestJobStatus.NEEDS_REVIEW.value,
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class CatalogRepository:
    """Job and proposal state transitions, each guarded by its expected prior state."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def _run(self, func_: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func_, *args)
        except SQLAlchemyError as exc:
            logger.exception("catalog repository operation failed")
            raise PersistenceError("database operation failed") from exc

    # Jobs ---------------------------------------------------------------

    async def find_reusable_job(self, tenant_id: str, idempotency_key: str) -> IngestJob | None:
        return await self._run(self._find_reusable_job, tenant_id, idempotency_key)

    def _find_reusable_job(self, tenant_id: str, idempotency_key: str) -> IngestJob | None:
        with self._session_factory() as session:
            return session.exec(
                select(IngestJob)
                .where(
                    IngestJob.tenant_id == tenant_id,
                    IngestJob.idempotency_key == idempotency_key,
                    IngestJob.status.in_(REUSABLE_JOB_STATUSES),
                )
                .order_by(IngestJob.created_at.desc())
            ).first()

    async def create_job(self, job: IngestJob) -> IngestJob:
        return await self._run(self._add, job)

    def _add(self, record: T) -> T:
        with self._session_factory() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    async def get_job(self, job_id: UUID, *, tenant_id: str | None = None) -> IngestJob | None:
        return await self._run(self._get_scoped, IngestJob, job_id, tenant_id)

    def _get_scoped(self, model: type[T], record_id: Any, tenant_id: str | None) -> T | None:
        with self._session_factory() as session:
            record = session.get(model, record_id)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            return None
        return record

    async def claim_job(self, job_id: UUID) -> bool:
        """Move a ``queued`` job to ``processing``; ``False`` if another worker won."""

        return await self._run(
            self._transition_job,
            job_id,
            (IngestJobStatus.QUEUED.value,),
            {"status": IngestJobStatus.PROCESSING.value},
        )

    async def fail_job(self, job_id: UUID, message: str) -> bool:
        return await self._run(
            self._transition_job,
            job_id,
            (IngestJobStatus.PROCESSING.value,),
            {"status": IngestJobStatus.FAILED.value, "error": message},
        )

    def _transition_job(
        self, job_id: UUID, expected: Sequence[str], values: dict[str, Any]
    ) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(IngestJob)
                .where(IngestJob.id == job_id, IngestJob.status.in_(expected))
                .values(**values, updated_at=_now())
            )
            session.commit()
        return result.rowcount > 0

    # Proposals ----------------------------------------------------------

    async def create_proposal_for_job(self, job_id: UUID, proposal: IngestProposal) -> IngestProposal:
        """Insert the proposal and move the job to ``needs_review`` atomically."""

        return await self._run(self._create_proposal_for_job, job_id, proposal)

    def _create_proposal_for_job(self, job_id: UUID, proposal: IngestProposal) -> IngestProposal:
        with self._session_factory() as session:
            session.add(proposal)
            session.flush()
            result = session.execute(
                update(IngestJob)
                .where(
                    IngestJob.id == job_id,
                    IngestJob.status == IngestJobStatus.PROCESSING.value,
                )
                .values(
                    status=IngestJobStatus.NEEDS_REVIEW.value,
                    proposal_id=proposal.id,
                    updated_at=_now(),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                raise ConflictError(
                    "job is no longer processing", details={"job_id": str(job_id)}
                )
            session.commit()
            session.refresh(proposal)
        return proposal

    async def create_proposal(self, proposal: IngestProposal) -> IngestProposal:
        return await self._run(self._add, proposal)

    async def get_proposal(
        self, proposal_id: UUID, *, tenant_id: str | None = None
    ) -> IngestProposal | None:
        return await self._run(self._get_scoped, IngestProposal, proposal_id, tenant_id)

    async def apply_proposal(
        self, proposal: IngestProposal, items: Sequence[CatalogItem]
    ) -> int:
        """Upsert ``items`` and mark the proposal and its job ``applied`` in one transaction."""

        return await self._run(self._apply_proposal, proposal, list(items))

    def _apply_proposal(self, proposal: IngestProposal, items: list[CatalogItem]) -> int:
        now = _now()
        with self._session_factory() as session:
            self._close_proposal(
                session,
                proposal.id,
                {"status": ProposalStatus.APPLIED.value, "applied_at": now, "updated_at": now},
            )
            for item in items:
                session.merge(item)
            if proposal.job_id is not None:
                session.execute(
                    update(IngestJob)
                    .where(IngestJob.id == proposal.job_id)
                    .values(status=IngestJobStatus.APPLIED.value, updated_at=now)
                )
            session.commit()
        return len(items)

    async def reject_proposal(self, proposal: IngestProposal, reason: str) -> None:
        await self._run(self._reject_proposal, proposal, reason)

    def _reject_proposal(self, proposal: IngestProposal, reason: str) -> None:
        now = _now()
        with self._session_factory() as session:
            self._close_proposal(
                session,
                proposal.id,
                {"status": ProposalStatus.REJECTED.value, "rejected_at": now, "updated_at": now},
            )
            if proposal.job_id is not None:
                session.execute(
                    update(IngestJob)
                    .where(IngestJob.id == proposal.job_id)
                    .values(status=IngestJobStatus.FAILED.value, error=reason, updated_at=now)
                )
            session.commit()

    @staticmethod
    def _close_proposal(session: Any, proposal_id: UUID, values: dict[str, Any]) -> None:
        result = session.execute(
            update(IngestProposal)
            .where(
                IngestProposal.id == proposal_id,
                IngestProposal.status == ProposalStatus.PROPOSED.value,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            session.rollback()
            current = session.get(IngestProposal, proposal_id)
            if current is None:
                raise NotFoundError("proposal not found", details={"proposal_id": str(proposal_id)})
            raise ProposalStateError(str(proposal_id), str(current.status))

    # Items --------------------------------------------------------------

    async def list_items(self, target_id: str, kind: str) -> list[CatalogItem]:
        return await self._run(self._list_items, target_id, kind)

    def _list_items(self, target_id: str, kind: str) -> list[CatalogItem]:
        with self._session_factory() as session:
            return list(
                session.exec(
                    select(CatalogItem)
                    .where(CatalogItem.target_id == target_id, CatalogItem.kind == kind)
                    .order_by(CatalogItem.sort_order)
                )
            )
