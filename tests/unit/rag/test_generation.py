from __future__ import annotations

from types import SimpleNamespace

import pytest
from openai import OpenAIError

from knowledgebase.core.config import LLMProvider, LLMSettings, OpenAISettings, OpenRouterSettings
from knowledgebase.ingestion.errors import GenerationError
from knowledgebase.rag.generation import GenerationService, GenerationSettings

pytestmark = pytest.mark.unit


class _StubCompletions:
    def __init__(self, content: str | None = "  Hello!  ", exc: Exception | None = None) -> None:
        self.content = content
        self.exc = exc
        self.calls: list[dict] = []

    async def create(self, **kwargs):  # noqa: ANN003, ANN201
        self.calls.append(kwargs)
        if self.exc:
            raise self.exc
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_client(**kwargs) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=_StubCompletions(**kwargs)))


@pytest.mark.asyncio
async def test_complete_sends_system_and_user_messages() -> None:
    client = make_client()
    service = GenerationService(
        GenerationSettings(model="gpt-test", temperature=0.3, max_tokens=256), client=client
    )

    reply = await service.complete("Question?", system="Be brief.")

    assert reply == "Hello!"
    call = client.chat.completions.calls[0]
    assert call["model"] == "gpt-test"
    assert call["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Question?"},
    ]
    assert call["temperature"] == 0.3
    assert call["max_tokens"] == 256


@pytest.mark.asyncio
async def test_temperature_override() -> None:
    client = make_client()
    service = GenerationService(GenerationSettings(model="gpt-test"), client=client)

    await service.complete("Extract items", temperature=0)

    call = client.chat.completions.calls[0]
    assert call["temperature"] == 0
    assert call["messages"] == [{"role": "user", "content": "Extract items"}]


@pytest.mark.asyncio
async def test_provider_errors_become_retryable_generation_errors() -> None:
    service = GenerationService(
        GenerationSettings(model="gpt-test"), client=make_client(exc=OpenAIError("rate limited"))
    )

    with pytest.raises(GenerationError) as excinfo:
        await service.complete("Question?")

    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_missing_api_key_is_not_retryable() -> None:
    service = GenerationService(GenerationSettings(model="gpt-test", api_key=None))

    with pytest.raises(GenerationError) as excinfo:
        await service.complete("Question?")

    assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_empty_content_becomes_empty_string() -> None:
    service = GenerationService(GenerationSettings(model="m"), client=make_client(content=None))

    assert await service.complete("Question?") == ""


def test_settings_follow_configured_provider() -> None:
    settings = GenerationSettings.from_settings(
        LLMSettings(provider=LLMProvider.OPENROUTER, temperature=0.7),
        OpenAISettings(api_key="sk-openai"),
        OpenRouterSettings(api_key="sk-router", model="meta/llama"),
    )

    assert settings.model == "meta/llama"
    assert settings.api_key == "sk-router"
    assert settings.base_url == "https://openrouter.ai/api/v1"
    assert settings.temperature == 0.7
