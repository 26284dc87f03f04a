"""
Provider-agnostic async LLM client for docrag.

Supports Google Gemini, Anthropic, and OpenAI behind one text-generation
interface with one-shot and streaming calls. Usage metadata is normalized
into LLMUsage so callers never touch provider response shapes.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Optional

if TYPE_CHECKING:
    from .config import LLMConfig

logger = logging.getLogger("docrag.common.llm_client")


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    text: str
    usage: Optional[LLMUsage] = None


@dataclass
class LLMChunk:
    """One incremental piece of a streamed reply"""
    text: str
    usage: Optional[LLMUsage] = None


def _google_chunk_text(chunk) -> str:
    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        feedback = getattr(chunk, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", 0):
            raise ValueError(f"Prompt blocked by safety filters: {feedback.block_reason}")
        return ""
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    return "".join(getattr(p, "text", "") for p in parts)


def _google_usage(metadata) -> Optional[LLMUsage]:
    if metadata is None:
        return None
    return LLMUsage(
        input_tokens=getattr(metadata, "prompt_token_count", 0) or 0,
        output_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
    )


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "google",
        model: str = "",
        google_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "google").lower()
        self.model = model
        self._client = None

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by (model, system prompt) hash
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, config: "LLMConfig") -> "LLMClient":
        return cls(
            provider=config.provider,
            model=config.model,
            google_api_key=config.google_api_key,
            anthropic_api_key=config.anthropic_api_key,
            openai_api_key=config.openai_api_key,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _ensure_available(self) -> None:
        if not self.is_available:
            raise RuntimeError(
                f"LLM client is not available: {self.provider} API key not configured"
            )

    def _google_model(self, model: str, system: Optional[str]):
        cache_key = hashlib.md5(f"{model}\x00{system or ''}".encode()).hexdigest()
        if cache_key not in self._google_models:
            kwargs = {"model_name": model}
            if system:
                kwargs["system_instruction"] = system
            self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
        return self._google_models[cache_key]

    def _messages(self, prompt: str, system: Optional[str]) -> list:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _anthropic_kwargs(self, prompt, system, max_tokens, temperature, model) -> dict:
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        self._ensure_available()
        model = model or self.model

        if self.provider == "google":
            generation_config = {"max_output_tokens": max_tokens}
            if temperature is not None:
                generation_config["temperature"] = temperature
            response = await self._google_model(model, system).generate_content_async(
                prompt,
                generation_config=generation_config,
            )
            # .text raises ValueError when the candidate was blocked
            return LLMResponse(
                text=response.text,
                usage=_google_usage(getattr(response, "usage_metadata", None)),
            )

        if self.provider == "anthropic":
            response = await self._client.messages.create(
                **self._anthropic_kwargs(prompt, system, max_tokens, temperature, model)
            )
            text = "".join(
                block.text for block in response.content if getattr(block, "type", "text") == "text"
            )
            usage = None
            if getattr(response, "usage", None) is not None:
                usage = LLMUsage(
                    input_tokens=response.usage.input_tokens or 0,
                    output_tokens=response.usage.output_tokens or 0,
                )
            return LLMResponse(text=text, usage=usage)

        if self.provider == "openai":
            kwargs = {
                "model": model,
                "max_tokens": max_tokens,
                "messages": self._messages(prompt, system),
            }
            if temperature is not None:
                kwargs["temperature"] = temperature
            response = await self._client.chat.completions.create(**kwargs)
            usage = None
            if getattr(response, "usage", None) is not None:
                usage = LLMUsage(
                    input_tokens=response.usage.prompt_tokens or 0,
                    output_tokens=response.usage.completion_tokens or 0,
                )
            return LLMResponse(text=response.choices[0].message.content or "", usage=usage)

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")

    async def stream(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[LLMChunk]:
        """Yield reply text incrementally; chunks may carry partial usage."""
        self._ensure_available()
        model = model or self.model

        if self.provider == "google":
            generation_config = {"max_output_tokens": max_tokens}
            if temperature is not None:
                generation_config["temperature"] = temperature
            response = await self._google_model(model, system).generate_content_async(
                prompt,
                generation_config=generation_config,
                stream=True,
            )
            async for chunk in response:
                yield LLMChunk(
                    text=_google_chunk_text(chunk),
                    usage=_google_usage(getattr(chunk, "usage_metadata", None)),
                )
            return

        if self.provider == "anthropic":
            usage = LLMUsage()
            events = await self._client.messages.create(
                stream=True,
                **self._anthropic_kwargs(prompt, system, max_tokens, temperature, model),
            )
            async for event in events:
                if event.type == "message_start" and event.message.usage:
                    usage = LLMUsage(input_tokens=event.message.usage.input_tokens or 0)
                    yield LLMChunk(text="", usage=usage)
                elif event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield LLMChunk(text=event.delta.text)
                elif event.type == "message_delta" and event.usage:
                    usage = LLMUsage(
                        input_tokens=usage.input_tokens,
                        output_tokens=event.usage.output_tokens or 0,
                    )
                    yield LLMChunk(text="", usage=usage)
            return

        if self.provider == "openai":
            kwargs = {
                "model": model,
                "max_tokens": max_tokens,
                "messages": self._messages(prompt, system),
                "stream": True,
                "stream_options": {"include_usage": True},
            }
            if temperature is not None:
                kwargs["temperature"] = temperature
            chunks = await self._client.chat.completions.create(**kwargs)
            async for chunk in chunks:
                text = ""
                if chunk.choices:
                    text = chunk.choices[0].delta.content or ""
                usage = None
                if getattr(chunk, "usage", None) is not None:
                    usage = LLMUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                yield LLMChunk(text=text, usage=usage)
            return

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")


# Process-wide singleton. Holders of an old instance keep using it after a
# reset; only later get_llm_client() calls see the new one.
_client_instance: Optional[LLMClient] = None
_client_lock = threading.Lock()


def get_llm_client(config: Optional["LLMConfig"] = None) -> LLMClient:
    """
    Get the shared LLMClient, creating it on first use.

    Args:
        config: LLM configuration; loaded from file/env when omitted

    Returns:
        LLMClient instance
    """
    global _client_instance

    client = _client_instance
    if client is not None:
        return client

    with _client_lock:
        if _client_instance is None:
            if config is None:
                from .config import load_config
                config = load_config().llm
            _client_instance = LLMClient.from_config(config)
            logger.debug("Created %s LLM client", _client_instance.provider)
        return _client_instance


def reset_llm_client() -> None:
    """Drop the shared client, e.g. after rotating API keys."""
    global _client_instance

    with _client_lock:
        _client_instance = None
