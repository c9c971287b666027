from __future__ import annotations

from pathlib import Path

import pytest

from knowledgebase.core.config import (
    AppSettings,
    HeadlessSettings,
    LimitsSettings,
    LLMProvider,
    LLMSettings,
    OpenAISettings,
    OpenRouterSettings,
    PostgresSettings,
)

pytestmark = pytest.mark.unit


def test_postgres_settings_env_precedence(tmp_path: Path, monkeypatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "POSTGRES_HOST=from_env_file",
                "POSTGRES_DATABASE=kb_store",
                "POSTGRES_USER=file_user",
            ]
        ),
        encoding="utf-8",
    )

    monkeypatch.setenv("POSTGRES_HOST", "from_environment")
    settings = PostgresSettings(_env_file=env_file)

    assert settings.host == "from_environment"
    assert settings.database == "kb_store"
    assert settings.user == "file_user"
    assert settings.dsn.startswith("postgresql://file_user:")


def test_postgres_url_overrides_components(monkeypatch) -> None:
    monkeypatch.setenv("POSTGRES_URL", "sqlite://")

    assert PostgresSettings().dsn == "sqlite://"


def test_app_settings_composes_sub_settings(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://example:6379/1")
    monkeypatch.setenv("LLM_PROVIDER", "openrouter")
    monkeypatch.setenv("LIMITS_MAX_CHUNKS", "42")
    monkeypatch.setenv("CATALOG_DEFAULT_CURRENCY", "EUR")

    settings = AppSettings.load()

    assert settings.redis.url == "redis://example:6379/1"
    assert settings.llm.provider is LLMProvider.OPENROUTER
    assert settings.limits.max_chunks == 42
    assert settings.catalog.default_currency == "EUR"


def test_limit_defaults() -> None:
    limits = LimitsSettings()

    assert limits.max_chunks == 500
    assert limits.max_pdf_pages == 30
    assert limits.max_docs == 50
    assert limits.max_upload_bytes == 10 * 1024 * 1024


def test_headless_enabled_requires_endpoint_and_token() -> None:
    assert not HeadlessSettings(endpoint_url="https://chrome.example").enabled
    assert HeadlessSettings(endpoint_url="https://chrome.example", token="t").enabled


def test_resolve_credentials_per_provider() -> None:
    openai = OpenAISettings(api_key="sk-openai", model="gpt-test")
    openrouter = OpenRouterSettings(api_key="sk-router", model="router/model")

    direct = LLMSettings(provider=LLMProvider.OPENAI).resolve_credentials(openai, openrouter)
    routed = LLMSettings(provider=LLMProvider.OPENROUTER).resolve_credentials(openai, openrouter)

    assert direct == {
        "api_key": "sk-openai",
        "base_url": None,
        "model": "gpt-test",
        "timeout_seconds": openai.timeout_seconds,
    }
    assert routed["api_key"] == "sk-router"
    assert routed["base_url"] == "https://openrouter.ai/api/v1"
    assert routed["model"] == "router/model"
