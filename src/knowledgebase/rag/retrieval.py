"""Diversity-capped retrieval of tenant knowledge for a live question."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from prometheus_client import Histogram

from knowledgebase.core.config import RetrievalSettings

logger = logging.getLogger(__name__)

RETRIEVAL_LATENCY = Histogram(
    "knowledge_retrieval_seconds",
    "Latency of retrieval stages.",
    labelnames=("stage",),
)


@dataclass(slots=True, frozen=True)
class ChunkMatch:
    """Nearest-neighbour hit; ``distance`` is cosine distance (0 is identical)."""

    document_id: str
    chunk_id: str
    text: str
    distance: float
    source_name: str | None = None


@dataclass(slots=True)
class RetrievalResult:
    context_text: str = ""
    sources: list[dict[str, Any]] = field(default_factory=list)
    has_context: bool = False


class QuestionEmbedder(Protocol):
    async def embed_one(self, text: str) -> list[float]:
        ...


class ChunkIndex(Protocol):
    async def find_nearest_chunks(
        self, tenant_id: str, vector: Sequence[float], limit: int
    ) -> list[ChunkMatch]:
        ...


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b:
        return 1.0
    if len(a) != len(b):
        raise ValueError(f"vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


def diversify(matches: Sequence[ChunkMatch], per_document: int) -> list[ChunkMatch]:
    """Keep at most ``per_document`` matches per document, preserving order."""

    counts: dict[str, int] = {}
    selected: list[ChunkMatch] = []
    for match in matches:
        seen = counts.get(match.document_id, 0)
        if seen >= per_document:
            continue
        counts[match.document_id] = seen + 1
        selected.append(match)
    return selected


def select_matches(
    matches: Sequence[ChunkMatch], settings: RetrievalSettings
) -> list[ChunkMatch]:
    """Apply the diversity cap, then the distance threshold, then ``top_n``.

    When the threshold would discard every diversified match the diversified
    set is used as is.
    """

    diversified = diversify(matches, settings.max_chunks_per_document)
    relevant = [match for match in diversified if match.distance <= settings.max_distance]
    return (relevant or diversified)[: settings.top_n]


def format_context(matches: Sequence[ChunkMatch]) -> str:
    return "\n\n".join(f"[{index}] {match.text}" for index, match in enumerate(matches, start=1))


class RetrievalEngine:
    def __init__(
        self,
        *,
        embedder: QuestionEmbedder,
        index: ChunkIndex,
        settings: RetrievalSettings | None = None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._settings = settings or RetrievalSettings()

    async def retrieve_context(self, tenant_id: str, question: str) -> RetrievalResult:
        if not question or not question.strip():
            return RetrievalResult()

        started = time.perf_counter()
        vector = await self._embedder.embed_one(question.strip())
        embedded = time.perf_counter()
        RETRIEVAL_LATENCY.labels(stage="embed").observe(embedded - started)

        candidates = await self._index.find_nearest_chunks(
            tenant_id, vector, self._settings.top_k
        )
        RETRIEVAL_LATENCY.labels(stage="search").observe(time.perf_counter() - embedded)
        logger.info(
            "retrieved candidate chunks",
            extra={"tenant_id": tenant_id, "candidates": len(candidates)},
        )
        if not candidates:
            return RetrievalResult()

        selected = select_matches(candidates, self._settings)
        sources = [
            {
                "document_id": match.document_id,
                "chunk_id": match.chunk_id,
                "source_name": match.source_name or "Unknown",
                "score": match.distance,
            }
            for match in selected
        ]
        logger.debug(
            "selected context chunks",
            extra={"tenant_id": tenant_id, "selected": len(selected)},
        )
        return RetrievalResult(
            context_text=format_context(selected),
            sources=sources,
            has_context=bool(selected),
        )
