"""
docrag Common Module

Shared infrastructure for the query pipeline.
"""

from .chunks import RetrievedChunk, Source
from .config import DocragConfig, load_config
from .embedding_service import EmbeddingService
from .errors import ErrorCode, Responder, ResponderError
from .llm_client import LLMClient, get_llm_client, reset_llm_client
from .vector_store import InMemoryVectorStore, VectorStore

__all__ = [
    "RetrievedChunk",
    "Source",
    "DocragConfig",
    "load_config",
    "EmbeddingService",
    "ErrorCode",
    "Responder",
    "ResponderError",
    "LLMClient",
    "get_llm_client",
    "reset_llm_client",
    "InMemoryVectorStore",
    "VectorStore",
]
