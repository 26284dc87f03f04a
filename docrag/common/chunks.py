"""
Chunk helpers shared by the coordinator and the relevance filter.

Turns raw vector-store hits into RetrievedChunk records and renders them as
labelled context blocks, prompt listings, and user-facing citations.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Sequence

SNIPPET_LENGTH = 150
CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_DOCUMENTS_CONTEXT = "No relevant documents found."


@dataclass(frozen=True)
class RetrievedChunk:
    """A slice of a source document returned by vector search"""
    text: str
    document_id: str
    document_name: str
    chunk_index: int
    score: float  # store distance, lower is closer


@dataclass(frozen=True)
class Source:
    """Truncated citation shown to the user"""
    document_id: str
    document_name: str
    chunk_index: int
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_chunks_from_results(hits: Sequence[Dict[str, Any]]) -> List[RetrievedChunk]:
    """Normalize raw store hits into RetrievedChunk records."""
    chunks = []
    for hit in hits:
        metadata = hit.get("metadata") or {}
        distance = hit.get("_distance")
        chunks.append(RetrievedChunk(
            text=hit.get("text", ""),
            document_id=metadata.get("documentId", ""),
            document_name=metadata.get("documentName", ""),
            chunk_index=int(metadata.get("chunkIndex", 0)),
            score=float(distance) if distance is not None else 0.0,
        ))
    return chunks


def make_source(chunk: RetrievedChunk) -> Source:
    return Source(
        document_id=chunk.document_id,
        document_name=chunk.document_name,
        chunk_index=chunk.chunk_index,
        snippet=chunk.text[:SNIPPET_LENGTH] + "...",
    )


def build_sources_from_chunks(chunks: Sequence[RetrievedChunk]) -> List[Source]:
    return [make_source(c) for c in chunks]


def build_context_from_chunks(chunks: Sequence[RetrievedChunk]) -> str:
    """Labelled context block handed to synthesis when filtering is skipped."""
    return CONTEXT_SEPARATOR.join(
        f"[Source: {c.document_name}, Chunk {c.chunk_index}]\n{c.text}"
        for c in chunks
    )


def build_search_context(chunks: Sequence[RetrievedChunk]) -> str:
    """Markdown context for search-only mode."""
    if not chunks:
        return NO_DOCUMENTS_CONTEXT
    return CONTEXT_SEPARATOR.join(
        f"## Source: {c.document_name} (Chunk {c.chunk_index})\n\n{c.text}"
        for c in chunks
    )


def format_chunks_for_prompt(chunks: Sequence[RetrievedChunk]) -> str:
    return "\n\n".join(
        f"[{i}] ({c.document_name}, score: {c.score:.3f}): {c.text}"
        for i, c in enumerate(chunks)
    )


def split_into_word_chunks(text: str, chunk_size: int, overlap: int) -> List[str]:
    """
    Split text into windows of ``chunk_size`` words, consecutive windows
    sharing ``overlap`` words. The last window ends at the final word.

    Raises:
        ValueError: If overlap is not smaller than chunk_size
    """
    if chunk_size < 1 or not 0 <= overlap < chunk_size:
        raise ValueError("Need chunk_size >= 1 and 0 <= overlap < chunk_size")

    words = text.split()
    step = chunk_size - overlap
    windows = []
    for start in range(0, len(words), step):
        windows.append(" ".join(words[start:start + chunk_size]))
        if start + chunk_size >= len(words):
            break
    return windows
