"""Embedding service with OpenAI and sentence-transformers backends."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from knowledgebase.core.config import LLMProvider, LLMSettings, OpenAISettings
from knowledgebase.ingestion.errors import EmbeddingError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EmbeddingSettings:
    """Runtime settings for embedding generation."""

    provider: LLMProvider = LLMProvider.OPENAI
    openai_model: str = "text-embedding-3-small"
    sentence_transformer_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    openai_api_key: str | None = None
    timeout_seconds: float = 60.0
    fallback_to_local: bool = True

    @classmethod
    def from_settings(cls, llm: LLMSettings, openai: OpenAISettings) -> EmbeddingSettings:
        return cls(
            provider=llm.embedding_provider,
            openai_model=openai.embedding_model,
            sentence_transformer_model=llm.sentence_transformer_model,
            openai_api_key=openai.api_key,
            timeout_seconds=openai.timeout_seconds,
        )


class EmbeddingService:
    """Produce vectors for chunk text and questions.

    Provider failures surface as :class:`EmbeddingError`, which the worker
    treats as retryable.
    """

    def __init__(self, settings: EmbeddingSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._openai_client = client
        self._st_model: Any | None = None

    @property
    def settings(self) -> EmbeddingSettings:
        return self._settings

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        if self._settings.provider is LLMProvider.LOCAL:
            return await self._embed_with_sentence_transformer(texts)

        try:
            vectors = await self._embed_with_openai(texts)
        except (OpenAIError, EmbeddingError) as exc:
            if not self._settings.fallback_to_local:
                if isinstance(exc, EmbeddingError):
                    raise
                raise EmbeddingError("embedding request failed") from exc
            logger.warning(
                "openai embeddings unavailable; using sentence-transformer fallback",
                extra={"error": str(exc)},
            )
            return await self._embed_with_sentence_transformer(texts)

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        if not vectors or not vectors[0]:
            raise EmbeddingError("embedding provider returned an empty vector")
        return vectors[0]

    async def _embed_with_openai(self, texts: Sequence[str]) -> list[list[float]]:
        client = self._load_openai_client()
        response = await client.embeddings.create(
            input=list(texts),
            model=self._settings.openai_model,
        )
        return [list(map(float, item.embedding)) for item in response.data]

    async def _embed_with_sentence_transformer(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            model = await asyncio.to_thread(self._load_sentence_transformer)
            vectors = await asyncio.to_thread(
                model.encode, list(texts), convert_to_numpy=False, normalize_embeddings=True
            )
        except (OSError, RuntimeError, ValueError) as exc:
            raise EmbeddingError("local embedding model failed") from exc
        return [list(map(float, vector)) for vector in vectors]

    def _load_openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            if not self._settings.openai_api_key:
                raise EmbeddingError("openai_api_key must be provided for OpenAI embeddings")
            self._openai_client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                timeout=self._settings.timeout_seconds,
            )
        return self._openai_client

    def _load_sentence_transformer(self) -> Any:
        if self._st_model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(
                "loading sentence-transformer model",
                extra={"model": self._settings.sentence_transformer_model},
            )
            self._st_model = SentenceTransformer(self._settings.sentence_transformer_model)
        return self._st_model
