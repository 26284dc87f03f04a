"""
Retriever - Document Question Answering

Key Components:
- RelevanceFilter: Small-model ranking and compression of search hits
- CloudSynthesizer / CliSynthesizer: Answer synthesis backends
- QueryCoordinator: Embed, search, filter, synthesize

Pipeline:
1. Embed the question
2. Search the vector store for relevant chunks
3. Optionally filter/compress them with the relevance model
4. Synthesize the answer with the selected backend
"""

from .relevance_filter import RelevanceFilter, RelevanceFilterError, FilterOptions, SubAgentResult
from .synthesizer import (
    CliSynthesizer,
    CloudSynthesizer,
    RAGResponse,
    ResponseOptions,
    SynthesisStream,
    TokenUsage,
    select_backend,
)
from .coordinator import QueryCoordinator, QueryResult, QueryTiming, SearchOnlyResult

__all__ = [
    "RelevanceFilter",
    "RelevanceFilterError",
    "FilterOptions",
    "SubAgentResult",
    "CliSynthesizer",
    "CloudSynthesizer",
    "RAGResponse",
    "ResponseOptions",
    "SynthesisStream",
    "TokenUsage",
    "select_backend",
    "QueryCoordinator",
    "QueryResult",
    "QueryTiming",
    "SearchOnlyResult",
]
