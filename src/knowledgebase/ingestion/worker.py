"""ARQ worker integration for knowledge documents and catalog jobs."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from arq import Retry
from arq.connections import RedisSettings
from redis.asyncio import Redis

from knowledgebase.bootstrap import Services, build_services
from knowledgebase.core.config import AppSettings, IngestionQueueSettings
from knowledgebase.core.context import RequestContext
from knowledgebase.core.db.models import DocumentStatus
from knowledgebase.core.logging import configure_logging
from knowledgebase.core.telemetry import init_telemetry, is_tracing_enabled
from knowledgebase.utils.retry import exponential_backoff

from .errors import IngestionError
from .models import CatalogJobTask, IngestionStage, KnowledgeIngestTask
from .redis import ProgressPublisherSettings, RedisPoisonQueue, RedisProgressPublisher
from .repository import KnowledgeRepository
from .settings import IngestionWorkerSettings

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialise connections and shared dependencies."""

    app_settings = AppSettings.load()
    worker_settings = IngestionWorkerSettings()
    ctx["settings"] = app_settings
    ctx["worker_settings"] = worker_settings

    configure_logging()
    init_telemetry(worker_settings.service_name, app_settings.telemetry)
    if is_tracing_enabled():
        logger.info("tracing active", extra={"service_name": worker_settings.service_name})

    queue = app_settings.ingestion_queue
    redis_client = Redis(
        host=queue.redis_host,
        port=queue.redis_port,
        db=queue.redis_db,
        password=queue.redis_password,
    )
    progress_publisher = RedisProgressPublisher(
        redis=redis_client,
        settings=ProgressPublisherSettings(
            channel_template=worker_settings.progress_channel_template
        ),
    )

    ctx["redis"] = redis_client
    ctx["progress_publisher"] = progress_publisher
    ctx["poison_queue"] = RedisPoisonQueue(redis=redis_client, key=worker_settings.poison_key)
    ctx["services"] = build_services(app_settings, progress_publisher=progress_publisher)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Clean up allocated resources."""

    services: Services | None = ctx.get("services")
    if services:
        await services.close()

    redis_client: Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()


async def _can_retry(knowledge: KnowledgeRepository, document_id: UUID) -> bool:
    if await knowledge.reopen_document(document_id):
        return True
    document = await knowledge.get_document(document_id)
    return document is not None and document.status == DocumentStatus.PROCESSING.value


async def process_knowledge_document(
    ctx: dict[str, Any], payload: dict[str, Any]
) -> dict[str, str]:
    """Ingest one knowledge document, retrying transient failures with backoff."""

    task = KnowledgeIngestTask.model_validate(payload)
    services: Services = ctx["services"]
    settings: IngestionWorkerSettings = ctx["worker_settings"]
    progress: RedisProgressPublisher = ctx["progress_publisher"]
    poison_queue: RedisPoisonQueue = ctx["poison_queue"]
    attempt = ctx.get("job_try", 1)
    context = RequestContext(tenant_id=task.tenant_id).for_document(str(task.document_id))

    try:
        report = await services.pipeline.run(task, context)
        return {"status": report.status, "chunks": str(report.chunk_count)}
    except IngestionError as exc:
        if (
            exc.retryable
            and attempt < settings.arq_max_retries
            and await _can_retry(services.knowledge, task.document_id)
        ):
            delay = exponential_backoff(
                attempt,
                base=settings.backoff_base,
                factor=settings.backoff_factor,
                max_delay=settings.backoff_max,
            )
            await progress.publish(
                context=context,
                stage=IngestionStage.RETRYING,
                detail={"message": exc.message, "attempt": attempt, "retry_in": round(delay, 2)},
            )
            raise Retry(defer=delay) from exc

        await progress.publish(
            context=context,
            stage=IngestionStage.FAILED,
            detail={"code": exc.code, "message": exc.message, "attempt": attempt},
        )
        await poison_queue.push("process_knowledge_document", payload, exc, attempt=attempt)
        raise
    except Exception:
        logger.exception("unhandled exception during ingestion", extra=context.log_fields())
        message = "unexpected failure processing knowledge document"
        await progress.publish(
            context=context,
            stage=IngestionStage.FAILED,
            detail={"message": message, "attempt": attempt},
        )
        await poison_queue.push(
            "process_knowledge_document",
            payload,
            IngestionError(message, retryable=False),
            attempt=attempt,
        )
        raise


async def process_catalog_job(ctx: dict[str, Any], payload: dict[str, Any]) -> dict[str, str]:
    """Process a catalog ingest job; failures are recorded on the job and not retried."""

    task = CatalogJobTask.model_validate(payload)
    services: Services = ctx["services"]
    context = RequestContext(tenant_id=task.tenant_id).for_job(str(task.job_id))

    proposal = await services.catalog.process_job(task.tenant_id, task.job_id, context)
    if proposal is None:
        return {"status": "no_proposal"}
    return {"status": "needs_review", "proposal_id": str(proposal.id)}


_QUEUE = IngestionQueueSettings()
_WORKER = IngestionWorkerSettings()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [process_knowledge_document, process_catalog_job]
    on_startup = startup
    on_shutdown = shutdown
    queue_name = _QUEUE.queue_name
    max_jobs = _WORKER.arq_concurrency
    max_tries = _WORKER.arq_max_retries
    job_timeout = _WORKER.arq_job_timeout
    redis_settings = RedisSettings(
        host=_QUEUE.redis_host,
        port=_QUEUE.redis_port,
        database=_QUEUE.redis_db,
        password=_QUEUE.redis_password,
    )
