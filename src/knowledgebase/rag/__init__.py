"""Retrieval augmented generation utilities."""

from . import answers, chunking, embeddings, generation, retrieval
from .answers import AnswerService, BusinessProfile, build_prompt_with_context, build_system_prompt
from .chunking import ChunkDraft, ChunkingConfig, chunk_text, dedupe_chunks
from .embeddings import EmbeddingService, EmbeddingSettings
from .generation import GenerationService, GenerationSettings
from .retrieval import ChunkMatch, RetrievalEngine, RetrievalResult, cosine_distance

__all__ = [
    "answers",
    "chunking",
    "embeddings",
    "generation",
    "retrieval",
    "AnswerService",
    "BusinessProfile",
    "build_prompt_with_context",
    "build_system_prompt",
    "ChunkDraft",
    "ChunkingConfig",
    "chunk_text",
    "dedupe_chunks",
    "EmbeddingService",
    "EmbeddingSettings",
    "GenerationService",
    "GenerationSettings",
    "ChunkMatch",
    "RetrievalEngine",
    "RetrievalResult",
    "cosine_distance",
]
