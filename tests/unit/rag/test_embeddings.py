from __future__ import annotations

from types import SimpleNamespace

import pytest
from openai import OpenAIError

from knowledgebase.core.config import LLMProvider, LLMSettings, OpenAISettings
from knowledgebase.ingestion.errors import EmbeddingError
from knowledgebase.rag.embeddings import EmbeddingService, EmbeddingSettings

pytestmark = pytest.mark.unit


class _StubModel:
    def encode(self, texts, convert_to_numpy=False, normalize_embeddings=True):  # noqa: ANN001, ANN202
        return [[float(len(text))] for text in texts]


class _StubEmbeddings:
    def __init__(self, vectors=None, exc: Exception | None = None) -> None:  # noqa: ANN001
        self.vectors = vectors
        self.exc = exc
        self.calls: list[dict] = []

    async def create(self, **kwargs):  # noqa: ANN003, ANN201
        self.calls.append(kwargs)
        if self.exc:
            raise self.exc
        vectors = self.vectors or [[0.1, 0.2] for _ in kwargs["input"]]
        return SimpleNamespace(data=[SimpleNamespace(embedding=vector) for vector in vectors])


def make_client(**kwargs) -> SimpleNamespace:
    return SimpleNamespace(embeddings=_StubEmbeddings(**kwargs))


@pytest.mark.asyncio
async def test_openai_embeddings_are_returned() -> None:
    client = make_client()
    service = EmbeddingService(EmbeddingSettings(openai_model="embed-test"), client=client)

    vectors = await service.embed(["hello", "world"])

    assert vectors == [[0.1, 0.2], [0.1, 0.2]]
    assert client.embeddings.calls == [{"input": ["hello", "world"], "model": "embed-test"}]


@pytest.mark.asyncio
async def test_empty_input_skips_provider() -> None:
    client = make_client()
    service = EmbeddingService(EmbeddingSettings(), client=client)

    assert await service.embed([]) == []
    assert client.embeddings.calls == []


@pytest.mark.asyncio
async def test_openai_failure_falls_back_to_sentence_transformer(monkeypatch) -> None:
    monkeypatch.setattr(
        EmbeddingService, "_load_sentence_transformer", lambda self: _StubModel()
    )
    service = EmbeddingService(
        EmbeddingSettings(provider=LLMProvider.OPENAI, fallback_to_local=True),
        client=make_client(exc=OpenAIError("quota exceeded")),
    )

    assert await service.embed(["menu"]) == [[4.0]]


@pytest.mark.asyncio
async def test_missing_api_key_falls_back_when_allowed(monkeypatch) -> None:
    monkeypatch.setattr(
        EmbeddingService, "_load_sentence_transformer", lambda self: _StubModel()
    )
    service = EmbeddingService(EmbeddingSettings(openai_api_key=None, fallback_to_local=True))

    assert await service.embed(["kb"]) == [[2.0]]


@pytest.mark.asyncio
async def test_openai_without_fallback_raises_embedding_error() -> None:
    service = EmbeddingService(
        EmbeddingSettings(fallback_to_local=False),
        client=make_client(exc=OpenAIError("down")),
    )

    with pytest.raises(EmbeddingError) as excinfo:
        await service.embed(["menu"])

    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_vector_count_mismatch_is_an_error() -> None:
    service = EmbeddingService(
        EmbeddingSettings(fallback_to_local=False),
        client=make_client(vectors=[[1.0]]),
    )

    with pytest.raises(EmbeddingError, match="1 vectors for 2 inputs"):
        await service.embed(["a", "b"])


@pytest.mark.asyncio
async def test_local_provider_uses_sentence_transformer(monkeypatch) -> None:
    monkeypatch.setattr(
        EmbeddingService, "_load_sentence_transformer", lambda self: _StubModel()
    )
    client = make_client()
    service = EmbeddingService(EmbeddingSettings(provider=LLMProvider.LOCAL), client=client)

    assert await service.embed_one("hours") == [5.0]
    assert client.embeddings.calls == []


@pytest.mark.asyncio
async def test_embed_one_rejects_empty_vector() -> None:
    service = EmbeddingService(
        EmbeddingSettings(fallback_to_local=False), client=make_client(vectors=[[]])
    )

    with pytest.raises(EmbeddingError, match="empty vector"):
        await service.embed_one("question")


def test_settings_are_built_from_app_settings() -> None:
    settings = EmbeddingSettings.from_settings(
        LLMSettings(embedding_provider=LLMProvider.LOCAL, sentence_transformer_model="mini"),
        OpenAISettings(api_key="sk-test", embedding_model="text-embedding-3-large"),
    )

    assert settings.provider is LLMProvider.LOCAL
    assert settings.openai_model == "text-embedding-3-large"
    assert settings.sentence_transformer_model == "mini"
    assert settings.openai_api_key == "sk-test"
