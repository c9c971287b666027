"""Chat completion client shared by answers and catalog extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError

from knowledgebase.core.config import LLMSettings, OpenAISettings, OpenRouterSettings
from knowledgebase.ingestion.errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GenerationSettings:
    model: str
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 60.0
    temperature: float = 0.2
    max_tokens: int | None = None

    @classmethod
    def from_settings(
        cls,
        llm: LLMSettings,
        openai: OpenAISettings,
        openrouter: OpenRouterSettings,
    ) -> GenerationSettings:
        credentials = llm.resolve_credentials(openai, openrouter)
        return cls(
            model=credentials["model"],
            api_key=credentials["api_key"],
            base_url=credentials["base_url"],
            timeout_seconds=credentials["timeout_seconds"],
            temperature=llm.temperature,
            max_tokens=llm.max_tokens,
        )


class GenerationService:
    """Single-turn chat completions against OpenAI or an OpenAI-compatible router."""

    def __init__(self, settings: GenerationSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def model(self) -> str:
        return self._settings.model

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        client = self._load_client()
        try:
            response = await client.chat.completions.create(
                model=self._settings.model,
                messages=messages,
                temperature=self._settings.temperature if temperature is None else temperature,
                max_tokens=self._settings.max_tokens,
            )
        except OpenAIError as exc:
            logger.warning(
                "generation request failed",
                extra={"model": self._settings.model, "error": str(exc)},
            )
            raise GenerationError("generation request failed") from exc

        if not response.choices:
            raise GenerationError("generation returned no choices")
        return (response.choices[0].message.content or "").strip()

    def _load_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.api_key:
                raise GenerationError(
                    "an api key must be configured for generation", retryable=False
                )
            self._client = AsyncOpenAI(
                api_key=self._settings.api_key,
                base_url=self._settings.base_url,
                timeout=self._settings.timeout_seconds,
            )
        return self._client
