"""
Embedding Service

On-device embedding generation using fastembed. Texts are truncated to the
model's usable length here, so callers never have to.
"""

import logging
from typing import TYPE_CHECKING, Callable, List, Optional

import numpy as np

if TYPE_CHECKING:
    from .config import EmbeddingConfig

logger = logging.getLogger("docrag.common.embedding_service")

ProgressCallback = Callable[[int, int], None]


class EmbeddingService:
    """
    Embedding collaborator for the query pipeline and ingestion.

    The fastembed model is loaded lazily on first use because loading it
    downloads weights.
    """

    def __init__(
        self,
        model: str = "BAAI/bge-small-en-v1.5",
        max_chars: int = 8000,
    ):
        self._model_name = model
        self._max_chars = max_chars
        self._model = None

    @classmethod
    def from_config(cls, config: "EmbeddingConfig") -> "EmbeddingService":
        return cls(model=config.model, max_chars=config.max_chars)

    def _ensure_model(self):
        if self._model is None:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=self._model_name)
            logger.info("Initialized embedding model %s", self._model_name)
        return self._model

    @property
    def is_available(self) -> bool:
        """Check if the embedding model can be loaded"""
        try:
            self._ensure_model()
            return True
        except Exception as e:
            logger.warning("Embedding model unavailable: %s", e)
            return False

    def _truncate(self, text: str) -> str:
        return text[: self._max_chars]

    def embed(self, texts: List[str], batch_size: int = 100) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed
            batch_size: Texts per model batch

        Returns:
            List of embedding vectors
        """
        if not texts:
            return []

        model = self._ensure_model()
        vectors = model.embed([self._truncate(t) for t in texts], batch_size=batch_size)
        return [np.asarray(v, dtype=float).tolist() for v in vectors]

    def embed_single(self, text: str) -> List[float]:
        """Generate the embedding for one query string."""
        if not text:
            raise ValueError("Cannot embed empty text")

        model = self._ensure_model()
        vector = next(iter(model.query_embed(self._truncate(text))))
        return np.asarray(vector, dtype=float).tolist()

    def embed_batch(
        self,
        texts: List[str],
        batch_size: int = 100,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[List[float]]:
        """
        Embed many texts in batches, reporting progress after each batch.

        Args:
            texts: Texts to embed
            batch_size: Number of texts per batch
            on_progress: Called with (completed, total) after every batch

        Returns:
            One vector per input text, in input order
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        results: List[List[float]] = []
        total = len(texts)
        for start in range(0, total, batch_size):
            batch = texts[start:start + batch_size]
            results.extend(self.embed(batch, batch_size=batch_size))
            if on_progress:
                on_progress(len(results), total)
        return results


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Cosine similarity between two vectors, in [-1, 1].

    Raises:
        ValueError: If the vectors differ in dimension
    """
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)

    if v1.shape != v2.shape:
        raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

    norm = np.linalg.norm(v1) * np.linalg.norm(v2)
    if norm == 0:
        return 0.0
    return float(np.dot(v1, v2) / norm)
