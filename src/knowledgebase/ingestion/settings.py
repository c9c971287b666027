"""Environment configuration for the ingestion worker."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestionWorkerSettings(BaseSettings):
    """Worker runtime knobs; connection details come from ``AppSettings``."""

    model_config = SettingsConfigDict(
        env_prefix="INGEST_",
        env_file=(".env.local", ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    progress_channel_template: str = "ingestion:{tenant}:{subject}"
    poison_key: str = "ingestion:poison"

    arq_concurrency: int = Field(default=5, ge=1)
    arq_job_timeout: int = Field(default=60 * 10, ge=1)
    arq_max_retries: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=2.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=60.0, gt=0)

    service_name: str = "knowledge_ingestion_worker"
