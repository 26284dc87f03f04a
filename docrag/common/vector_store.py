"""
Vector Store

Boundary contract for the document store plus a numpy-backed in-memory
implementation. Hits are plain dicts shaped like
``{"id", "text", "metadata": {...}, "_distance"}`` where a lower distance
means a closer match.
"""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

import numpy as np

logger = logging.getLogger("docrag.common.vector_store")

_FILTER_RE = re.compile(r'^\s*metadata\.(\w+)\s*=\s*"((?:[^"\\]|\\.)*)"\s*$')


def escape_filter_value(value: str) -> str:
    """Escape backslashes and quotes for use inside a filter string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_document_filter(document_id: Optional[str]) -> Optional[str]:
    if not document_id:
        return None
    return f'metadata.documentId = "{escape_filter_value(document_id)}"'


def parse_equality_filter(expression: str) -> tuple:
    """
    Parse ``metadata.<key> = "<value>"`` into (key, value).

    Raises:
        ValueError: If the expression is not a single equality predicate
    """
    match = _FILTER_RE.match(expression)
    if not match:
        raise ValueError(f"Unsupported filter expression: {expression}")
    key, raw_value = match.groups()
    value = re.sub(r"\\(.)", r"\1", raw_value)
    return key, value


@dataclass
class DocumentSummary:
    """Per-document aggregate over its stored chunks"""
    document_id: str
    document_name: str
    chunk_count: int
    timestamp: float = 0.0
    source: Optional[str] = None
    type: Optional[str] = None


class VectorStore(ABC):
    """Search/insert/list/delete contract the query pipeline relies on."""

    @abstractmethod
    def search(
        self,
        vector: List[float],
        limit: int = 10,
        filter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return up to ``limit`` hits ordered by ascending distance."""

    @abstractmethod
    def add_documents(self, docs: List[Dict[str, Any]]) -> None:
        """Insert chunk records (id, vector, text, metadata)."""

    @abstractmethod
    def list_documents(self) -> List[str]:
        """Return the distinct document ids in the store."""

    @abstractmethod
    def get_document_summaries(self) -> List[DocumentSummary]:
        """Return one DocumentSummary per stored document."""

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        """Remove every chunk belonging to a document."""


class InMemoryVectorStore(VectorStore):
    """Cosine-distance store for tests and local prototyping."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def add_documents(self, docs: List[Dict[str, Any]]) -> None:
        for doc in docs:
            if "id" not in doc or "vector" not in doc:
                raise ValueError("Each document needs an 'id' and a 'vector'")
            self._records[doc["id"]] = {
                "id": doc["id"],
                "vector": np.asarray(doc["vector"], dtype=float),
                "text": doc.get("text", ""),
                "metadata": dict(doc.get("metadata", {})),
            }
        logger.debug("Stored %d chunk(s), %d total", len(docs), len(self._records))

    def search(
        self,
        vector: List[float],
        limit: int = 10,
        filter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if not self._records or limit <= 0:
            return []

        candidates = list(self._records.values())
        if filter:
            key, value = parse_equality_filter(filter)
            candidates = [r for r in candidates if str(r["metadata"].get(key)) == value]
        if not candidates:
            return []

        query = np.asarray(vector, dtype=float)
        matrix = np.stack([r["vector"] for r in candidates])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        distances = 1.0 - (matrix @ query) / norms

        order = np.argsort(distances, kind="stable")[:limit]
        return [
            {
                "id": candidates[i]["id"],
                "text": candidates[i]["text"],
                "metadata": dict(candidates[i]["metadata"]),
                "_distance": float(distances[i]),
            }
            for i in order
        ]

    def list_documents(self) -> List[str]:
        seen = []
        for record in self._records.values():
            doc_id = record["metadata"].get("documentId")
            if doc_id and doc_id not in seen:
                seen.append(doc_id)
        return seen

    def get_document_summaries(self) -> List[DocumentSummary]:
        summaries: Dict[str, DocumentSummary] = {}
        for record in self._records.values():
            meta = record["metadata"]
            doc_id = meta.get("documentId")
            if not doc_id:
                continue
            if doc_id not in summaries:
                summaries[doc_id] = DocumentSummary(
                    document_id=doc_id,
                    document_name=meta.get("documentName", ""),
                    chunk_count=0,
                    timestamp=meta.get("timestamp", 0.0),
                    source=meta.get("source"),
                    type=meta.get("type"),
                )
            summaries[doc_id].chunk_count += 1
        return list(summaries.values())

    def delete_document(self, document_id: str) -> None:
        doomed = [
            rid for rid, r in self._records.items()
            if r["metadata"].get("documentId") == document_id
        ]
        for rid in doomed:
            del self._records[rid]
        logger.debug("Deleted %d chunk(s) of %s", len(doomed), document_id)
