"""
Query Coordinator

Runs one query through the pipeline:
1. Embed the question
2. Vector search (3x over-fetch when compressing), optionally scoped to a document
3. Zero hits short-circuit to a canned answer
4. Normalize hits into RetrievedChunk records
5. Either filter/compress with the relevance model, or use every chunk as-is
6. Synthesize the answer with the selected backend
7. Assemble QueryResult with per-stage timings

Also owns the ingestion side (add/list/delete documents) and search-only mode.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..common.chunks import (
    RetrievedChunk,
    Source,
    build_chunks_from_results,
    build_context_from_chunks,
    build_search_context,
    build_sources_from_chunks,
    make_source,
    split_into_word_chunks,
)
from ..common.config import DocragConfig, RESPONDER_CLOUD, load_config
from ..common.embedding_service import EmbeddingService
from ..common.errors import Responder
from ..common.vector_store import DocumentSummary, VectorStore, build_document_filter
from .relevance_filter import FilterOptions, RelevanceFilter, SubAgentResult
from .synthesizer import (
    BackendSelection,
    CliSynthesizer,
    CloudSynthesizer,
    RAGResponse,
    ResponseOptions,
    SynthesisBackend,
    SynthesisStream,
    TokenUsage,
    select_backend,
)

logger = logging.getLogger("docrag.retriever.coordinator")

NO_DOCUMENTS_ANSWER = "I don't have any documents to search. Please upload some documents first."

# Candidates fetched per requested chunk when the relevance model will discard some
COMPRESS_OVERFETCH = 3


@dataclass
class QueryTiming:
    """Stage durations in milliseconds"""
    embedding: float = 0.0
    search: float = 0.0
    response: float = 0.0
    total: float = 0.0
    filtering: Optional[float] = None


@dataclass(frozen=True)
class QueryResult:
    answer: str
    sources: List[Source]
    tokens_used: TokenUsage
    timing: QueryTiming
    responder_used: Responder
    sub_agent_result: Optional[SubAgentResult] = None
    responder_fallback: bool = False
    responder_fallback_message: Optional[str] = None


@dataclass
class SearchOnlyResult:
    context: str
    chunks: List[RetrievedChunk]
    timing: QueryTiming


@dataclass
class ReadinessStatus:
    ready: bool
    responder: Optional[str] = None
    responder_ready: bool = False
    error: Optional[str] = None


@dataclass
class _Prepared:
    """Output of stages 1-5"""
    started: float
    timing: QueryTiming
    chunks: List[RetrievedChunk] = field(default_factory=list)
    context: str = ""
    sources: List[Source] = field(default_factory=list)
    sub_agent_result: Optional[SubAgentResult] = None


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _validate_query(text: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Query must be a non-empty string")


class QueryCoordinator:
    """
    Orchestrates embedding, retrieval, optional filtering and synthesis.

    Stages run strictly in sequence within a query. Instances hold no
    per-query state, so one coordinator serves concurrent queries.
    """

    def __init__(
        self,
        embedder: EmbeddingService,
        store: VectorStore,
        relevance_filter: Optional[RelevanceFilter] = None,
        backend: Optional[SynthesisBackend] = None,
        config: Optional[DocragConfig] = None,
        cli_backend: Optional[CliSynthesizer] = None,
        cloud_backend: Optional[CloudSynthesizer] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            embedder: Embedding collaborator (blocking, run in a worker thread)
            store: Vector store collaborator (blocking, run in a worker thread)
            relevance_filter: Filter for compress mode; built from config when None
            backend: Fixed synthesis backend; when None it is picked per query
            config: Configuration; loaded from file/env when None
            cli_backend: CLI backend used by per-query selection
            cloud_backend: Cloud backend used by per-query selection
        """
        self._config = config if config is not None else load_config()
        self._embedder = embedder
        self._store = store
        self._filter = relevance_filter or RelevanceFilter(
            model=self._config.filter.model,
            max_output_tokens=self._config.filter.max_output_tokens,
            temperature=self._config.filter.temperature,
        )
        self._backend = backend
        self._cli_backend = cli_backend or CliSynthesizer(
            command=self._config.responder.cli_command,
            args=self._config.responder.cli_args,
        )
        self._cloud_backend = cloud_backend or CloudSynthesizer(
            model=self._config.llm.model,
            timeout_ms=self._config.llm.timeout_ms,
        )

    def _select_backend(self, responder: Optional[str]) -> BackendSelection:
        if self._backend is not None and responder is None:
            return BackendSelection(backend=self._backend)
        return select_backend(
            self._config,
            cli_backend=self._cli_backend,
            cloud_backend=self._cloud_backend,
            override=responder,
        )

    def _response_options(self, system_prompt: Optional[str]) -> ResponseOptions:
        return ResponseOptions(
            system_prompt=system_prompt,
            max_tokens=self._config.responder.max_tokens,
            temperature=self._config.responder.temperature,
        )

    async def _embed_and_search(
        self,
        text: str,
        limit: int,
        document_id: Optional[str],
        timing: QueryTiming,
    ) -> List[RetrievedChunk]:
        start = time.perf_counter()
        vector = await asyncio.to_thread(self._embedder.embed_single, text)
        timing.embedding = _elapsed_ms(start)
        logger.debug("Embedding generated in %.1fms", timing.embedding)

        start = time.perf_counter()
        hits = await asyncio.to_thread(
            self._store.search,
            vector,
            limit,
            build_document_filter(document_id),
        )
        timing.search = _elapsed_ms(start)
        logger.debug("Found %d chunks in %.1fms", len(hits), timing.search)

        return build_chunks_from_results(hits)

    async def _prepare(
        self,
        text: str,
        top_k: Optional[int],
        document_id: Optional[str],
        compress: bool,
    ) -> _Prepared:
        top_k = top_k or self._config.retrieval.top_k
        prepared = _Prepared(started=time.perf_counter(), timing=QueryTiming())

        limit = top_k * COMPRESS_OVERFETCH if compress else top_k
        chunks = await self._embed_and_search(text, limit, document_id, prepared.timing)
        prepared.chunks = chunks
        if not chunks:
            return prepared

        if compress:
            start = time.perf_counter()
            result = await self._filter.filter_and_rank(
                text, chunks, FilterOptions(compress=True, max_chunks=top_k)
            )
            prepared.timing.filtering = _elapsed_ms(start)
            logger.debug(
                "Relevance filter kept %d of %d chunks in %.1fms",
                len(result.selected_chunks), len(chunks), prepared.timing.filtering,
            )
            prepared.sub_agent_result = result
            prepared.context = result.relevant_context
            prepared.sources = [make_source(chunks[i]) for i in result.selected_chunks]
        else:
            prepared.context = build_context_from_chunks(chunks)
            prepared.sources = build_sources_from_chunks(chunks)

        return prepared

    def _finish_timing(self, prepared: _Prepared) -> QueryTiming:
        timing = prepared.timing
        stages = timing.embedding + timing.search + timing.response + (timing.filtering or 0.0)
        timing.total = max(_elapsed_ms(prepared.started), stages)
        return timing

    def _empty_result(self, prepared: _Prepared, selection: BackendSelection) -> QueryResult:
        logger.info("No chunks found, returning canned answer")
        return QueryResult(
            answer=NO_DOCUMENTS_ANSWER,
            sources=[],
            tokens_used=TokenUsage(),
            timing=self._finish_timing(prepared),
            responder_used=selection.backend.responder,
            responder_fallback=selection.fallback,
            responder_fallback_message=selection.message,
        )

    def _assemble(
        self,
        prepared: _Prepared,
        response: RAGResponse,
        selection: BackendSelection,
    ) -> QueryResult:
        timing = self._finish_timing(prepared)
        responder = selection.backend.responder
        answer_tokens = response.tokens_used.input + response.tokens_used.output

        if prepared.sub_agent_result is not None:
            logger.info(
                "Query completed in %.0fms (filter: %d tokens, %s: %d tokens)",
                timing.total, prepared.sub_agent_result.tokens_used, responder.value, answer_tokens,
            )
        else:
            logger.info(
                "Query completed in %.0fms (direct to %s: %d tokens)",
                timing.total, responder.value, answer_tokens,
            )

        return QueryResult(
            answer=response.answer,
            sources=response.sources,
            tokens_used=response.tokens_used,
            timing=timing,
            responder_used=responder,
            sub_agent_result=prepared.sub_agent_result,
            responder_fallback=selection.fallback,
            responder_fallback_message=selection.message,
        )

    async def query(
        self,
        text: str,
        *,
        top_k: Optional[int] = None,
        document_id: Optional[str] = None,
        compress: bool = False,
        system_prompt: Optional[str] = None,
        responder: Optional[str] = None,
    ) -> QueryResult:
        """
        Answer a question from the stored documents.

        Args:
            text: The user's question
            top_k: Chunks to hand to synthesis (config default when None)
            document_id: Restrict retrieval to one document
            compress: Filter and condense chunks with the relevance model first
            system_prompt: Replaces the default synthesis system prompt
            responder: "cli" or "cloud" to override backend selection

        Returns:
            QueryResult with answer, sources, token usage and timings

        Raises:
            ResponderError: Synthesis failed
            RelevanceFilterError: The relevance model failed in compress mode
            ValueError: Empty question
        """
        _validate_query(text)
        logger.info('Query: "%s" (compress=%s)', text[:50], compress)
        selection = self._select_backend(responder)

        prepared = await self._prepare(text, top_k, document_id, compress)
        if not prepared.chunks:
            return self._empty_result(prepared, selection)

        start = time.perf_counter()
        response = await selection.backend.generate(
            text, prepared.context, prepared.sources, self._response_options(system_prompt)
        )
        prepared.timing.response = _elapsed_ms(start)

        return self._assemble(prepared, response, selection)

    def stream_query(
        self,
        text: str,
        *,
        top_k: Optional[int] = None,
        document_id: Optional[str] = None,
        compress: bool = False,
        system_prompt: Optional[str] = None,
        responder: Optional[str] = None,
    ) -> SynthesisStream:
        """
        Streaming variant of query().

        Retrieval and filtering run on first iteration; the answer then
        arrives fragment by fragment. ``result`` of the returned stream is
        the full QueryResult.
        """
        _validate_query(text)
        return SynthesisStream(
            self._stream_query(text, top_k, document_id, compress, system_prompt, responder)
        )

    async def _stream_query(self, text, top_k, document_id, compress, system_prompt, responder):
        logger.info('Streaming query: "%s" (compress=%s)', text[:50], compress)
        selection = self._select_backend(responder)

        prepared = await self._prepare(text, top_k, document_id, compress)
        if not prepared.chunks:
            yield NO_DOCUMENTS_ANSWER
            yield self._empty_result(prepared, selection)
            return

        start = time.perf_counter()
        stream = selection.backend.stream(
            text, prepared.context, prepared.sources, self._response_options(system_prompt)
        )
        try:
            async for fragment in stream:
                yield fragment
        finally:
            await stream.aclose()
        prepared.timing.response = _elapsed_ms(start)

        yield self._assemble(prepared, stream.result, selection)

    async def search(
        self,
        text: str,
        *,
        top_k: Optional[int] = None,
        document_id: Optional[str] = None,
    ) -> SearchOnlyResult:
        """Retrieve and format matching chunks without any model call."""
        _validate_query(text)
        logger.info('Searching: "%s"', text[:50])

        started = time.perf_counter()
        timing = QueryTiming()
        chunks = await self._embed_and_search(
            text, top_k or self._config.retrieval.top_k, document_id, timing
        )
        timing.total = max(_elapsed_ms(started), timing.embedding + timing.search)

        return SearchOnlyResult(
            context=build_search_context(chunks),
            chunks=chunks,
            timing=timing,
        )

    async def add_document(
        self,
        text: str,
        name: str,
        source: Optional[str] = None,
        type: Optional[str] = None,
    ) -> Tuple[str, int]:
        """
        Chunk, embed and store a document.

        Returns:
            (document_id, number of chunks stored)
        """
        if not text or not text.strip():
            raise ValueError("Document text is empty")

        retrieval = self._config.retrieval
        document_id = f"doc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        pieces = split_into_word_chunks(text, retrieval.chunk_size, retrieval.chunk_overlap)

        logger.info("Generating embeddings for %d chunks...", len(pieces))
        vectors = await asyncio.to_thread(
            self._embedder.embed_batch, pieces, self._config.embedding.batch_size
        )

        timestamp = int(time.time() * 1000)
        docs = [
            {
                "id": f"{document_id}_{i}",
                "vector": vector,
                "text": piece,
                "metadata": {
                    "documentId": document_id,
                    "documentName": name,
                    "chunkIndex": i,
                    "timestamp": timestamp,
                    "source": source,
                    "type": type,
                },
            }
            for i, (piece, vector) in enumerate(zip(pieces, vectors))
        ]
        await asyncio.to_thread(self._store.add_documents, docs)
        logger.info("Added document %s with %d chunks", document_id, len(docs))

        return document_id, len(docs)

    async def list_documents(self) -> List[str]:
        return await asyncio.to_thread(self._store.list_documents)

    async def document_summaries(self) -> List[DocumentSummary]:
        return await asyncio.to_thread(self._store.get_document_summaries)

    async def delete_document(self, document_id: str) -> None:
        await asyncio.to_thread(self._store.delete_document, document_id)
        logger.info("Deleted document %s", document_id)

    async def is_ready(self) -> ReadinessStatus:
        """Check the embedding model and the configured responder."""
        embedding_ok = await asyncio.to_thread(lambda: self._embedder.is_available)
        if not embedding_ok:
            return ReadinessStatus(ready=False, error="Embedding model unavailable")

        responder_type = self._config.responder.type
        if responder_type == RESPONDER_CLOUD:
            responder_ready = await self._cloud_backend.check_ready()
        else:
            responder_ready = self._cli_backend.is_available()

        return ReadinessStatus(
            ready=True,
            responder=responder_type,
            responder_ready=responder_ready,
        )
