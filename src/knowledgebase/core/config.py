"""Configuration loaders for the knowledge core.

Leverages pydantic-settings to hydrate runtime configuration from environment
variables, an optional ``.env`` file, or default values. Nested settings classes
mirror infrastructure concerns (datastore, queue, model providers) and the
resource limits applied to untrusted content.
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    """Base settings that looks at environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def _prefixed(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class PostgresSettings(BaseAppSettings):
    """Postgres connection details."""

    model_config = _prefixed("postgres_")

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "knowledgebase"
    user: str = "knowledgebase"
    password: str = "changeme"
    sslmode: str = "prefer"
    url: str | None = None

    @cached_property
    def dsn(self) -> str:
        """Return a SQLAlchemy compatible DSN string."""

        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.sslmode}"
        )


class RedisSettings(BaseAppSettings):
    """Redis URL used for progress events."""

    model_config = _prefixed("redis_")

    url: str = "redis://localhost:6379/0"


class LLMProvider(str, Enum):
    """Supported model provider identifiers."""

    OPENAI = "openai"
    OPENROUTER = "openrouter"
    LOCAL = "local"


class OpenAISettings(BaseAppSettings):
    """Configuration specific to OpenAI-compatible models."""

    model_config = _prefixed("openai_")

    api_key: str | None = None
    model: str = Field(default="gpt-4.1-mini")
    vision_model: str = Field(default="gpt-4.1-mini")
    embedding_model: str = Field(default="text-embedding-3-small")
    timeout_seconds: float = Field(default=60.0, ge=0.1)


class OpenRouterSettings(BaseAppSettings):
    """Configuration specific to OpenRouter-hosted models."""

    model_config = _prefixed("openrouter_")

    api_key: str | None = None
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "openai/gpt-4.1-mini"
    timeout_seconds: float = Field(default=60.0, ge=0.1)


class LLMSettings(BaseAppSettings):
    """Aggregate configuration for the active generation provider."""

    model_config = _prefixed("llm_")

    provider: LLMProvider = LLMProvider.OPENAI
    embedding_provider: LLMProvider = LLMProvider.OPENAI
    sentence_transformer_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)

    def resolve_credentials(
        self,
        openai: OpenAISettings,
        openrouter: OpenRouterSettings,
    ) -> dict[str, Any]:
        """Return the credential payload for the configured generation provider."""

        if self.provider is LLMProvider.OPENROUTER:
            return {
                "api_key": openrouter.api_key,
                "base_url": openrouter.base_url,
                "model": openrouter.model,
                "timeout_seconds": openrouter.timeout_seconds,
            }

        return {
            "api_key": openai.api_key,
            "base_url": None,
            "model": openai.model,
            "timeout_seconds": openai.timeout_seconds,
        }


class TelemetrySettings(BaseAppSettings):
    """Shared telemetry configuration."""

    model_config = _prefixed("otel_")

    exporter_endpoint: str | None = None
    exporter_headers: str | None = None
    metrics_host: str = "0.0.0.0"
    metrics_port: int | None = None


class StorageSettings(BaseAppSettings):
    """Object storage holding uploaded PDFs, images and files."""

    model_config = _prefixed("storage_")

    endpoint_url: str = "http://localhost:9000"
    bucket: str = "knowledge"
    access_key: str = "minio"
    secret_key: str = "minio123"
    region: str = "us-east-1"
    public_base_url: str | None = None


class IngestionQueueSettings(BaseAppSettings):
    """Redis connection details for the ingestion worker queue."""

    model_config = _prefixed("ingest_")

    redis_host: str = "localhost"
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    redis_password: str | None = None
    queue_name: str = "ingestion"


class FetchSettings(BaseAppSettings):
    """Limits applied when fetching untrusted URLs."""

    model_config = _prefixed("fetch_")

    timeout_seconds: float = Field(default=12.0, gt=0)
    dns_timeout_seconds: float = Field(default=1.5, gt=0)
    max_redirects: int = Field(default=5, ge=0)
    max_html_bytes: int = Field(default=750_000, ge=1)
    max_asset_bytes: int = Field(default=12 * 1024 * 1024, ge=1)
    max_text_chars: int = Field(default=200_000, ge=1)
    max_follow_links: int = Field(default=4, ge=0)
    follow_links_below_chars: int = Field(default=1_500, ge=0)
    user_agent: str = "Mozilla/5.0 (compatible; KnowledgeBot/1.0)"


class LimitsSettings(BaseAppSettings):
    """Per-tenant resource caps."""

    model_config = _prefixed("limits_")

    max_chunks: int = Field(default=500, ge=1)
    max_pdf_pages: int = Field(default=30, ge=1)
    max_upload_mb: int = Field(default=10, ge=1)
    max_docs: int = Field(default=50, ge=1)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


class RetrievalSettings(BaseAppSettings):
    """Knobs controlling candidate selection for answers."""

    model_config = _prefixed("retrieval_")

    top_k: int = Field(default=20, ge=1)
    top_n: int = Field(default=8, ge=1)
    max_chunks_per_document: int = Field(default=2, ge=1)
    max_distance: float = Field(default=0.7, ge=0.0, le=2.0)


class HeadlessSettings(BaseAppSettings):
    """Optional headless rendering service (Browserless compatible)."""

    model_config = _prefixed("headless_")

    endpoint_url: str | None = None
    token: str | None = None
    timeout_seconds: float = Field(default=45.0, gt=0)
    max_text_chars: int = Field(default=50_000, ge=1)

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint_url and self.token)


class CatalogSettings(BaseAppSettings):
    """Structured item extraction defaults."""

    model_config = _prefixed("catalog_")

    default_currency: str = "TRY"
    max_prompt_chars: int = Field(default=60_000, ge=1)
    min_source_chars: int = Field(default=50, ge=1)


class AppSettings(BaseAppSettings):
    """Top level settings object used by services."""

    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    openrouter: OpenRouterSettings = Field(default_factory=OpenRouterSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    ingestion_queue: IngestionQueueSettings = Field(default_factory=IngestionQueueSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    headless: HeadlessSettings = Field(default_factory=HeadlessSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)

    @classmethod
    def load(cls, **kwargs: Any) -> AppSettings:
        """Helper factory that mirrors BaseSettings semantics."""

        return cls(**kwargs)
