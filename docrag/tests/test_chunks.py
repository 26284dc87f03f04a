"""Tests for chunk normalization and formatting."""

import pytest

from docrag.common.chunks import (
    CONTEXT_SEPARATOR,
    NO_DOCUMENTS_CONTEXT,
    RetrievedChunk,
    build_chunks_from_results,
    build_context_from_chunks,
    build_search_context,
    build_sources_from_chunks,
    format_chunks_for_prompt,
    make_source,
    split_into_word_chunks,
)


def _hit(text, doc="d1", name="Guide", index=0, distance=0.25):
    hit = {
        "id": f"{doc}_{index}",
        "text": text,
        "metadata": {"documentId": doc, "documentName": name, "chunkIndex": index},
    }
    if distance is not None:
        hit["_distance"] = distance
    return hit


class TestBuildChunks:
    def test_maps_metadata(self):
        chunks = build_chunks_from_results([_hit("hello", doc="a", name="A.md", index=3)])
        assert chunks == [RetrievedChunk("hello", "a", "A.md", 3, 0.25)]

    def test_missing_distance_is_zero(self):
        chunks = build_chunks_from_results([_hit("x", distance=None)])
        assert chunks[0].score == 0.0

    def test_empty(self):
        assert build_chunks_from_results([]) == []


class TestSources:
    def test_snippet_truncated_with_ellipsis(self):
        text = "x" * 400
        source = make_source(RetrievedChunk(text, "d", "n", 0, 0.1))
        assert source.snippet == "x" * 150 + "..."
        assert len(source.snippet) <= 153

    def test_short_text_still_gets_ellipsis(self):
        source = make_source(RetrievedChunk("short", "d", "n", 0, 0.1))
        assert source.snippet == "short..."

    def test_one_source_per_chunk_in_order(self):
        chunks = build_chunks_from_results([_hit(f"t{i}", index=i) for i in range(4)])
        sources = build_sources_from_chunks(chunks)
        assert [s.chunk_index for s in sources] == [0, 1, 2, 3]
        assert all(chunks[i].text.startswith(s.snippet[:-3]) for i, s in enumerate(sources))


class TestContext:
    def test_labelled_blocks(self):
        chunks = build_chunks_from_results([
            _hit("alpha", name="A", index=0),
            _hit("beta", name="B", index=1),
        ])
        context = build_context_from_chunks(chunks)
        assert context == "[Source: A, Chunk 0]\nalpha" + CONTEXT_SEPARATOR + "[Source: B, Chunk 1]\nbeta"
        assert context.count(CONTEXT_SEPARATOR) == 1

    def test_search_context(self):
        chunks = build_chunks_from_results([_hit("alpha", name="A", index=2)])
        assert build_search_context(chunks) == "## Source: A (Chunk 2)\n\nalpha"

    def test_search_context_empty(self):
        assert build_search_context([]) == NO_DOCUMENTS_CONTEXT

    def test_prompt_listing(self):
        chunks = build_chunks_from_results([
            _hit("alpha", name="A", distance=0.12345),
            _hit("beta", name="B", distance=0.5),
        ])
        listing = format_chunks_for_prompt(chunks)
        assert listing == "[0] (A, score: 0.123): alpha\n\n[1] (B, score: 0.500): beta"


class TestWordChunks:
    def test_windows_overlap(self):
        words = " ".join(f"w{i}" for i in range(10))
        windows = split_into_word_chunks(words, chunk_size=4, overlap=1)
        assert windows == ["w0 w1 w2 w3", "w3 w4 w5 w6", "w6 w7 w8 w9"]

    def test_short_text_single_window(self):
        assert split_into_word_chunks("  one two  ", chunk_size=100, overlap=20) == ["one two"]

    def test_empty_text(self):
        assert split_into_word_chunks("   ", chunk_size=10, overlap=2) == []

    def test_overlap_must_be_smaller(self):
        with pytest.raises(ValueError):
            split_into_word_chunks("a b c", chunk_size=5, overlap=5)
