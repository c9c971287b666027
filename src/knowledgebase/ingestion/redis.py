"""Redis utilities for progress events and poison queue handling."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis

from knowledgebase.core.context import RequestContext

from .errors import IngestionError
from .models import IngestionStage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressPublisherSettings:
    """Settings controlling Redis channels."""

    channel_template: str = "ingestion:{tenant}:{subject}"


class RedisProgressPublisher:
    """Emit ingestion lifecycle events over Redis Pub/Sub.

    Publishing is best effort; a Redis failure is logged and never changes
    the outcome of the work being reported on.
    """

    def __init__(
        self,
        *,
        redis: Redis,
        settings: ProgressPublisherSettings | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings or ProgressPublisherSettings()

    async def publish(
        self,
        *,
        context: RequestContext,
        stage: IngestionStage,
        detail: dict[str, object] | None = None,
    ) -> None:
        subject = context.document_id or context.job_id or "-"
        channel = self._settings.channel_template.format(
            tenant=context.tenant_id, subject=subject
        )
        payload = {
            **context.log_fields(),
            "stage": stage.value,
            "detail": _stringify(detail or {}),
        }
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except Exception:
            logger.exception(
                "failed to publish ingestion progress", extra={"channel": channel}
            )


class RedisPoisonQueue:
    """Persist finally failed tasks to a poison list for manual inspection."""

    def __init__(self, *, redis: Redis, key: str = "ingestion:poison") -> None:
        self._redis = redis
        self._key = key

    async def push(
        self,
        task: str,
        payload: dict[str, Any],
        error: IngestionError,
        *,
        attempt: int,
    ) -> None:
        record = {
            "task": task,
            "payload": payload,
            "error": error.as_dict(),
            "attempt": attempt,
        }
        try:
            await self._redis.lpush(self._key, json.dumps(record, default=str))
        except Exception:
            logger.exception(
                "failed to record task in poison queue", extra={"queue": self._key}
            )


class NullProgressPublisher:
    """Progress sink used when no Redis connection is configured."""

    async def publish(
        self,
        *,
        context: RequestContext,
        stage: IngestionStage,
        detail: dict[str, object] | None = None,
    ) -> None:
        logger.debug(
            "ingestion progress",
            extra={**context.log_fields(), "stage": stage.value},
        )


def _stringify(detail: dict[str, object]) -> dict[str, str]:
    return {key: str(value) for key, value in detail.items()}
