"""Model-backed text extraction for images and PDFs that defeat local parsing."""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from knowledgebase.core.config import OpenAISettings
from knowledgebase.ingestion.errors import GenerationError

logger = logging.getLogger(__name__)

_EXTRACTION_PROMPT = (
    "Extract all readable text from this document. Preserve headings, lists, "
    "prices and table rows line by line. Return plain text only, without "
    "commentary. If there is no readable text, return an empty response."
)


class DocumentUnderstanding(Protocol):
    async def extract_image_text(self, data: bytes, mime_type: str) -> str:
        ...

    async def extract_pdf_text(self, data: bytes) -> str:
        ...


def _data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class OpenAIDocumentUnderstanding:
    """Use a vision-capable chat model to transcribe images and PDFs."""

    def __init__(self, settings: OpenAISettings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    async def extract_image_text(self, data: bytes, mime_type: str) -> str:
        part = {"type": "image_url", "image_url": {"url": _data_url(data, mime_type)}}
        return await self._transcribe(part, kind="image")

    async def extract_pdf_text(self, data: bytes) -> str:
        part = {
            "type": "file",
            "file": {
                "filename": "document.pdf",
                "file_data": _data_url(data, "application/pdf"),
            },
        }
        return await self._transcribe(part, kind="pdf")

    async def _transcribe(self, part: dict[str, Any], *, kind: str) -> str:
        client = self._load_client()
        try:
            response = await client.chat.completions.create(
                model=self._settings.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [{"type": "text", "text": _EXTRACTION_PROMPT}, part],
                    }
                ],
                temperature=0,
            )
        except OpenAIError as exc:
            logger.warning(
                "document understanding request failed",
                extra={"kind": kind, "error": str(exc)},
            )
            raise GenerationError(f"failed to extract text from {kind}") from exc

        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()

    def _load_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.api_key:
                raise GenerationError(
                    "openai api key must be configured for document understanding",
                    retryable=False,
                )
            self._client = AsyncOpenAI(
                api_key=self._settings.api_key,
                timeout=self._settings.timeout_seconds,
            )
        return self._client
