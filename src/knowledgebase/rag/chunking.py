"""Boundary-aware text chunking with content-hash deduplication."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ChunkingConfig:
    """Configuration parameters controlling chunk sizes and overlap."""

    chunk_size: int = 1200
    overlap: int = 150
    min_chunk_size: int = 50
    boundary_lookahead: int = 200

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            msg = "chunk_size must be greater than zero"
            raise ValueError(msg)
        if self.overlap < 0:
            msg = "overlap must be non-negative"
            raise ValueError(msg)
        if self.overlap >= self.chunk_size:
            msg = "overlap must be smaller than chunk_size"
            raise ValueError(msg)
        if self.min_chunk_size <= 0:
            msg = "min_chunk_size must be greater than zero"
            raise ValueError(msg)
        if self.boundary_lookahead < 0:
            msg = "boundary_lookahead must be non-negative"
            raise ValueError(msg)


@dataclass(slots=True, frozen=True)
class ChunkDraft:
    """A unique chunk ready to be embedded."""

    index: int
    text: str
    text_hash: str


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _boundary_after(text: str, end: int, lookahead: int) -> int | None:
    """Return the end offset just past the next sentence or line break, if close."""

    length = len(text)
    period = text.find(".", end)
    newline = text.find("\n", end)
    boundary = min(
        period + 1 if period != -1 else length,
        newline if newline != -1 else length,
    )
    if boundary - end < lookahead:
        return boundary
    return None


def chunk_text(text: str, config: ChunkingConfig | None = None) -> list[str]:
    """Split ``text`` into overlapping windows ending on natural boundaries.

    Each window is ``chunk_size`` characters, extended to the next period or
    newline when one occurs within ``boundary_lookahead`` characters. The next
    window starts ``overlap`` characters before the previous end and always
    moves forward. Windows shorter than ``min_chunk_size`` after trimming are
    dropped.
    """

    config = config or ChunkingConfig()
    length = len(text)
    chunks: list[str] = []
    start = 0

    while start < length:
        end = min(start + config.chunk_size, length)
        if end < length:
            boundary = _boundary_after(text, end, config.boundary_lookahead)
            if boundary is not None:
                end = boundary

        piece = text[start:end].strip()
        if len(piece) >= config.min_chunk_size:
            chunks.append(piece)
        if end >= length:
            break

        next_start = end - config.overlap
        start = next_start if next_start > start else end

    return chunks


def dedupe_chunks(chunks: Iterable[str]) -> list[ChunkDraft]:
    """Drop repeated chunks, keeping the first occurrence of each content hash."""

    seen: set[str] = set()
    drafts: list[ChunkDraft] = []
    for text in chunks:
        digest = sha256_hex(text)
        if digest in seen:
            continue
        seen.add(digest)
        drafts.append(ChunkDraft(index=len(drafts), text=text, text_hash=digest))
    return drafts


def chunk_and_dedupe(text: str, config: ChunkingConfig | None = None) -> list[ChunkDraft]:
    return dedupe_chunks(chunk_text(text, config))
