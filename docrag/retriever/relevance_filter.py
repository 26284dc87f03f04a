"""
Relevance Filter: secondary-model ranking and compression of search hits.

After vector search over-fetches candidates, a small fast model picks the
chunks that actually answer the query and optionally condenses them. Its
reply is untrusted free-form text: it is parsed defensively, indices are
validated against the input, and an empty selection degrades to the top
chunks by similarity instead of failing the query.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..common.chunks import RetrievedChunk, format_chunks_for_prompt
from ..common.errors import ResponderError, classify_cloud_error
from ..common.llm_client import LLMClient, get_llm_client
from ..common.llm_utils import extract_json_object

logger = logging.getLogger("docrag.retriever.relevance_filter")


FILTER_SYSTEM_PROMPT = """You are a retrieval assistant specialized in filtering and ranking document chunks for relevance.
Your job is to analyze chunks retrieved from a vector search and determine which are most useful for answering a query.
Be precise and only select chunks that contain information directly relevant to the query.
Discard chunks that are tangentially related or contain no useful information."""

FILTER_USER_PROMPT = """Given the following user query and document chunks, identify the most relevant chunks.

User Query: "{query}"

Retrieved Chunks:
{chunks}

Instructions:
1. Identify which chunks are MOST relevant to answering the query
2. {output_instruction}
3. Explain your reasoning briefly

Respond in this exact JSON format (no markdown, just raw JSON):
{{
  "selectedIndices": [0, 2, 4],
  "relevantContext": "The condensed or concatenated relevant information...",
  "reasoning": "Brief explanation of why these chunks were selected and others were discarded"
}}"""

COMPRESS_INSTRUCTION = "Summarize the key information from relevant chunks into a condensed, coherent context"
CONCATENATE_INSTRUCTION = "Concatenate the text from relevant chunks"


@dataclass
class FilterOptions:
    compress: bool = True
    max_chunks: int = 5
    min_relevance: Optional[float] = None  # accepted, not applied yet


@dataclass
class SubAgentResult:
    """Filtered context; selected_chunks index into the input chunk list"""
    relevant_context: str
    selected_chunks: List[int] = field(default_factory=list)
    summary: Optional[str] = None
    tokens_used: int = 0
    reasoning: Optional[str] = None


@dataclass
class FilterFailure:
    """Batch entry for a (query, chunks) pair that failed"""
    error: str
    query: str


class RelevanceFilterError(Exception):
    """Model call failed or its reply could not be parsed."""

    def __init__(self, message: str, responder_error: Optional[ResponderError] = None):
        super().__init__(message)
        self.responder_error = responder_error


def build_user_prompt(query: str, chunks_text: str, compress: bool) -> str:
    return FILTER_USER_PROMPT.format(
        query=query,
        chunks=chunks_text,
        output_instruction=COMPRESS_INSTRUCTION if compress else CONCATENATE_INSTRUCTION,
    )


def parse_filter_reply(raw: str) -> Dict[str, Any]:
    """
    Parse the model reply into {selectedIndices, relevantContext, reasoning}.

    Raises:
        RelevanceFilterError: No JSON object, or required fields missing/wrong type
    """
    data = extract_json_object(raw)
    if data is None:
        raise RelevanceFilterError("Could not find JSON in relevance model response")

    indices = data.get("selectedIndices")
    if not isinstance(indices, list):
        raise RelevanceFilterError("Response missing selectedIndices array")
    context = data.get("relevantContext")
    if not isinstance(context, str):
        raise RelevanceFilterError("Response missing relevantContext string")

    reasoning = data.get("reasoning")
    return {
        "selectedIndices": indices,
        "relevantContext": context,
        "reasoning": str(reasoning) if reasoning is not None else "",
    }


def validate_indices(indices: Sequence[Any], chunk_count: int) -> List[int]:
    """
    Keep integer indices within [0, chunk_count), in the model's order.

    Integral floats such as ``2.0`` count as their integer value.
    """
    valid = []
    for value in indices:
        # bool is an int subclass; JSON true/false are not indices
        if isinstance(value, bool):
            continue
        if isinstance(value, float):
            if not value.is_integer():
                continue
            value = int(value)
        if isinstance(value, int) and 0 <= value < chunk_count:
            valid.append(value)
    return valid


class RelevanceFilter:
    """
    LLM-based relevance filter for retrieved chunks.

    Uses a small, low-temperature model call. Advisory only: when the model
    selects nothing usable the original similarity order is kept.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        model: str = "",
        max_output_tokens: int = 1024,
        temperature: float = 0.1,
    ):
        """
        Initialize the filter.

        Args:
            llm_client: Client for the secondary model; the shared client when None
            model: Model override; the client's default model when empty
            max_output_tokens: Reply budget for the model
            temperature: Sampling temperature, low for stable output
        """
        self._llm = llm_client
        self._model = model
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature

    async def filter_and_rank(
        self,
        query: str,
        chunks: Sequence[RetrievedChunk],
        options: Optional[FilterOptions] = None,
    ) -> SubAgentResult:
        """
        Select and optionally compress the chunks most relevant to a query.

        Args:
            query: The user's original question
            chunks: Chunks from vector search, in similarity order
            options: compress / max_chunks settings

        Returns:
            SubAgentResult whose selected_chunks index into ``chunks``

        Raises:
            RelevanceFilterError: On model-call failure or an unparseable reply
        """
        if not isinstance(query, str) or not query.strip():
            raise RelevanceFilterError("Query must be a non-empty string")

        options = options or FilterOptions()
        max_chunks = options.max_chunks

        if not chunks:
            return SubAgentResult(
                relevant_context="",
                selected_chunks=[],
                tokens_used=0,
                reasoning="No chunks provided",
            )

        if not options.compress and len(chunks) <= max_chunks:
            return SubAgentResult(
                relevant_context="\n\n".join(c.text for c in chunks),
                selected_chunks=list(range(len(chunks))),
                tokens_used=0,
                reasoning="All chunks returned without filtering (count below max_chunks)",
            )

        llm = self._llm or get_llm_client()
        prompt = build_user_prompt(query, format_chunks_for_prompt(chunks), options.compress)

        try:
            response = await llm.generate(
                prompt,
                system=FILTER_SYSTEM_PROMPT,
                max_tokens=self._max_output_tokens,
                temperature=self._temperature,
                model=self._model or None,
            )
        except Exception as e:
            classified = classify_cloud_error(e)
            raise RelevanceFilterError(
                f"Relevance model error: {classified.message}", classified
            ) from e

        if not response.text or not response.text.strip():
            raise RelevanceFilterError("Empty response from relevance model")

        parsed = parse_filter_reply(response.text)
        tokens_used = response.usage.total if response.usage else 0
        logger.debug("Relevance filter used %d tokens", tokens_used)

        selected = validate_indices(parsed["selectedIndices"], len(chunks))[:max_chunks]

        if not selected:
            count = min(max_chunks, len(chunks))
            logger.warning(
                "Relevance model selected no valid chunks (%s), falling back to top %d",
                parsed["selectedIndices"], count,
            )
            return SubAgentResult(
                relevant_context="\n\n".join(c.text for c in chunks[:count]),
                selected_chunks=list(range(count)),
                tokens_used=tokens_used,
                reasoning=(
                    f"Model selected no valid chunks (indices: {parsed['selectedIndices']}). "
                    f"Falling back to top {count} chunks by vector similarity."
                ),
            )

        return SubAgentResult(
            relevant_context=parsed["relevantContext"],
            selected_chunks=selected,
            summary=parsed["relevantContext"] if options.compress else None,
            tokens_used=tokens_used,
            reasoning=parsed["reasoning"],
        )

    async def batch_filter(
        self,
        pairs: Sequence[Tuple[str, Sequence[RetrievedChunk]]],
        options: Optional[FilterOptions] = None,
    ) -> List[Union[SubAgentResult, FilterFailure]]:
        """
        Filter several (query, chunks) pairs concurrently.

        The result list is index-aligned with ``pairs``; a failing pair yields
        a FilterFailure instead of failing the whole batch.
        """
        outcomes = await asyncio.gather(
            *(self.filter_and_rank(query, chunks, options) for query, chunks in pairs),
            return_exceptions=True,
        )

        results: List[Union[SubAgentResult, FilterFailure]] = []
        for (query, _), outcome in zip(pairs, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Batch filter failed for query %r: %s", query[:50], outcome)
                results.append(FilterFailure(error=str(outcome) or "Unknown error", query=query))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results
