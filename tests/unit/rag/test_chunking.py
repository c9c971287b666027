from __future__ import annotations

import pytest

from knowledgebase.rag.chunking import (
    ChunkingConfig,
    chunk_and_dedupe,
    chunk_text,
    dedupe_chunks,
    sha256_hex,
)

pytestmark = pytest.mark.unit


def unique_text(length: int) -> str:
    """Text without periods or newlines where every 5-char block differs."""

    return "".join(f"{index:05d}" for index in range(length // 5))


def test_default_chunking_config() -> None:
    config = ChunkingConfig()
    assert config.chunk_size == 1200
    assert config.overlap == 150
    assert config.min_chunk_size == 50
    assert config.boundary_lookahead == 200


@pytest.mark.parametrize(
    "kwargs",
    [
        {"chunk_size": 0},
        {"overlap": -1},
        {"chunk_size": 100, "overlap": 100},
        {"min_chunk_size": 0},
        {"boundary_lookahead": -5},
    ],
)
def test_invalid_config_is_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ChunkingConfig(**kwargs)


def test_text_without_boundaries_uses_fixed_windows() -> None:
    text = unique_text(3000)

    chunks = chunk_text(text)

    assert len(chunks) == 3
    assert chunks[0] == text[0:1200]
    assert chunks[1] == text[1050:2250]
    assert chunks[2] == text[2100:3000]


def test_window_extends_to_nearby_sentence_end() -> None:
    text = unique_text(1250) + "." + unique_text(1500)

    chunks = chunk_text(text)

    assert chunks[0].endswith(".")
    assert len(chunks[0]) == 1251
    assert chunks[1] == text[1101:2301]


def test_distant_boundary_is_ignored() -> None:
    text = unique_text(1500) + "." + unique_text(500)

    chunks = chunk_text(text)

    assert len(chunks[0]) == 1200


def test_short_text_below_minimum_is_dropped() -> None:
    assert chunk_text("too short") == []
    assert chunk_text("x" * 60) == ["x" * 60]


def test_short_trailing_window_is_dropped() -> None:
    config = ChunkingConfig(chunk_size=100, overlap=10, min_chunk_size=50, boundary_lookahead=0)
    text = unique_text(100) + "  " + " " * 30 + "tail"

    chunks = chunk_text(text, config)

    assert chunks == [text[:100]]


def test_dedupe_keeps_first_occurrence_and_reindexes() -> None:
    drafts = dedupe_chunks(["alpha", "beta", "alpha", "gamma"])

    assert [draft.text for draft in drafts] == ["alpha", "beta", "gamma"]
    assert [draft.index for draft in drafts] == [0, 1, 2]
    assert drafts[0].text_hash == sha256_hex("alpha")


def test_repetitive_text_collapses_to_unique_chunks() -> None:
    text = "abcdefghij" * 300

    drafts = chunk_and_dedupe(text)

    assert len(chunk_text(text)) == 3
    assert len(drafts) == 2


def test_chunking_is_deterministic() -> None:
    text = "Opening hours are nine to five.\n" * 120

    first = [draft.text_hash for draft in chunk_and_dedupe(text)]
    second = [draft.text_hash for draft in chunk_and_dedupe(text)]

    assert first == second
