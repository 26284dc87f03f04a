"""
Synthesizer

Turns retrieved context plus the user's question into a grounded answer.
Two interchangeable backends share one contract:

- CloudSynthesizer: calls the cloud model through the shared LLMClient,
  with a timeout raced against the call and true incremental streaming.
- CliSynthesizer: runs a locally installed CLI tool as a subprocess, feeds
  the prompt over stdin (never argv, so no shell quoting is involved) and
  streams stdout back to the caller.

Both return a SynthesisStream from ``stream()``: an async iterator of text
fragments whose ``result`` holds the final RAGResponse once it is exhausted.
"""

import asyncio
import codecs
import contextlib
import logging
import math
import re
import shutil
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, List, Optional, Protocol, Sequence

from ..common.chunks import Source
from ..common.config import DocragConfig, RESPONDER_CLOUD
from ..common.errors import (
    ErrorCode,
    Responder,
    ResponderError,
    classify_cli_error,
    classify_cloud_error,
    not_installed_error,
    timeout_error,
)
from ..common.llm_client import LLMClient, get_llm_client

logger = logging.getLogger("docrag.retriever.synthesizer")


DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on provided context.
- Answer using ONLY the information in the context
- If the context doesn't contain enough information, say so clearly
- Reference sources when possible (e.g., "According to [document name]...")
- Be concise but thorough"""

CLOSING_INSTRUCTION = "Please provide a comprehensive answer based on the context above."

# Availability checks spawn a lookup; reuse the answer for a while
CLI_CHECK_TTL_SECONDS = 30.0


@dataclass
class ResponseOptions:
    system_prompt: Optional[str] = None
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0


@dataclass
class RAGResponse:
    answer: str
    sources: List[Source] = field(default_factory=list)
    tokens_used: TokenUsage = field(default_factory=TokenUsage)


class SynthesisStream:
    """
    Pull-style view over a synthesis in progress.

    Iterating yields text fragments in emission order. After the last
    fragment ``result`` holds the terminal value. Closing the stream early
    (``aclose()`` or leaving an ``async with`` block) still runs the
    backend's cleanup to completion.
    """

    def __init__(self, source: AsyncIterator[Any]):
        # source yields str fragments, then exactly one non-str terminal value
        self._source = source
        self._result = None
        self._finished = False

    def __aiter__(self) -> "SynthesisStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        try:
            item = await self._source.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise
        if isinstance(item, str):
            return item
        self._result = item
        self._finished = True
        await self._source.aclose()
        raise StopAsyncIteration

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self):
        if self._result is None:
            raise RuntimeError("Stream has not completed")
        return self._result

    async def collect(self):
        """Drain the remaining fragments and return the terminal value."""
        async for _ in self:
            pass
        return self.result

    async def aclose(self) -> None:
        self._finished = True
        await self._source.aclose()

    async def __aenter__(self) -> "SynthesisStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class SynthesisBackend(Protocol):
    """Capability set shared by both synthesis backends."""

    responder: Responder

    async def generate(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
    ) -> RAGResponse:
        ...

    def stream(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
    ) -> SynthesisStream:
        ...


def validate_inputs(query: str, context: str, sources: Sequence[Source]) -> None:
    if not isinstance(query, str) or not query.strip():
        raise ValueError("Query must be a non-empty string")
    if not isinstance(context, str):
        raise ValueError("Context must be a string")
    if not isinstance(sources, (list, tuple)):
        raise ValueError("Sources must be a list")


def sanitize_context(context: str) -> str:
    """Neutralize tokens that could break out of the context fence."""
    text = context.replace("```", "′′′")
    text = re.sub(r"</?system>", "[system]", text, flags=re.IGNORECASE)
    text = re.sub(r"\[INST\]", "[inst]", text, flags=re.IGNORECASE)
    text = re.sub(r"<<SYS>>", "[[SYS]]", text, flags=re.IGNORECASE)
    return text


def build_prompt(query: str, context: str, *, sanitize: bool, closing: bool) -> str:
    if sanitize:
        context = sanitize_context(context)
    prompt = (
        "Context (pre-filtered for relevance):\n"
        f"```context\n{context}\n```\n\n"
        f"Question: {query}"
    )
    if closing:
        prompt += f"\n\n{CLOSING_INSTRUCTION}"
    return prompt


def estimate_tokens(text: str) -> int:
    """Rough token count for backends that report none: one token per 4 chars."""
    return math.ceil(len(text) / 4)


class CloudSynthesizer:
    """
    Synthesis through the cloud model.

    The client is fetched from ``llm_client_factory`` on every call, so a
    reset of the shared client only affects calls that start afterwards.
    """

    responder = Responder.CLOUD_MODEL

    def __init__(
        self,
        llm_client_factory: Callable[[], LLMClient] = get_llm_client,
        model: str = "",
        timeout_ms: int = 60000,
    ):
        self._client_factory = llm_client_factory
        self._model = model
        self._timeout_ms = timeout_ms

    async def _race(self, call, operation: str, cancel_event: Optional[asyncio.Event] = None):
        """Run ``call`` against the timeout and an optional cancel signal."""
        call_task = asyncio.ensure_future(call)
        cancel_task = None
        waiters = {call_task}
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if call_task in done:
                return call_task.result()
            if cancel_task is not None and cancel_task in done:
                raise asyncio.CancelledError(f"{operation} was cancelled")
            raise timeout_error(operation, self._timeout_ms)
        finally:
            for task in (call_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def generate(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RAGResponse:
        """
        One-shot answer from the cloud model.

        Raises:
            ResponderError: Classified failure, TIMEOUT when the budget runs out
            asyncio.CancelledError: When ``cancel_event`` fires first
        """
        validate_inputs(query, context, sources)
        options = options or ResponseOptions()
        prompt = build_prompt(query, context, sanitize=True, closing=True)

        try:
            client = self._client_factory()
            response = await self._race(
                client.generate(
                    prompt,
                    system=options.system_prompt or DEFAULT_SYSTEM_PROMPT,
                    max_tokens=options.max_tokens,
                    temperature=options.temperature,
                    model=self._model or None,
                ),
                f"{client.provider} generate",
                cancel_event,
            )
        except ResponderError:
            raise
        except Exception as e:
            raise classify_cloud_error(e, self._timeout_ms) from e

        if not response.text:
            raise ResponderError("Empty response from cloud model", ErrorCode.UNKNOWN, self.responder)

        usage = response.usage
        return RAGResponse(
            answer=response.text,
            sources=list(sources),
            tokens_used=TokenUsage(
                input=usage.input_tokens if usage else 0,
                output=usage.output_tokens if usage else 0,
            ),
        )

    def stream(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
    ) -> SynthesisStream:
        validate_inputs(query, context, sources)
        return SynthesisStream(self._stream(query, context, sources, options or ResponseOptions()))

    async def _stream(self, query, context, sources, options):
        prompt = build_prompt(query, context, sanitize=True, closing=False)
        parts: List[str] = []
        usage = TokenUsage()

        try:
            client = self._client_factory()
            chunks = client.stream(
                prompt,
                system=options.system_prompt or DEFAULT_SYSTEM_PROMPT,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                model=self._model or None,
            )
            try:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        usage = TokenUsage(
                            input=chunk.usage.input_tokens,
                            output=chunk.usage.output_tokens,
                        )
                    if chunk.text:
                        parts.append(chunk.text)
                        yield chunk.text
            finally:
                await chunks.aclose()
        except ResponderError:
            raise
        except Exception as e:
            raise classify_cloud_error(e, self._timeout_ms) from e

        yield RAGResponse(answer="".join(parts), sources=list(sources), tokens_used=usage)

    async def check_ready(self) -> bool:
        """Probe the cloud model with a tiny request."""
        try:
            client = self._client_factory()
            response = await self._race(
                client.generate('Say "ready" in one word.', max_tokens=10, model=self._model or None),
                "readiness check",
            )
            return bool(response.text)
        except Exception as e:
            logger.debug("Cloud model not ready: %s", e)
            return False


@dataclass
class _ProcessExit:
    """Terminal queue item: the process finished (or the pump failed)."""
    returncode: Optional[int]
    stderr: str = ""
    error: Optional[BaseException] = None


class CliSynthesizer:
    """
    Synthesis through a locally installed CLI tool.

    Each call owns its subprocess and its fragment queue; nothing is shared
    between calls. There is no timeout on this path: a hung tool blocks
    until the caller cancels.
    """

    responder = Responder.LOCAL_CLI

    def __init__(
        self,
        command: str = "claude",
        args: Sequence[str] = ("--print",),
        read_size: int = 1024,
    ):
        self._command = command
        self._args = list(args)
        self._read_size = read_size
        self._available: Optional[bool] = None
        self._checked_at = 0.0

    def is_available(self) -> bool:
        now = time.monotonic()
        if self._available is None or now - self._checked_at >= CLI_CHECK_TTL_SECONDS:
            self._available = shutil.which(self._command) is not None
            self._checked_at = now
        return self._available

    def build_cli_prompt(self, query: str, context: str, options: ResponseOptions) -> str:
        system_prompt = options.system_prompt or DEFAULT_SYSTEM_PROMPT
        return f"{system_prompt}\n\n{build_prompt(query, context, sanitize=False, closing=True)}"

    async def generate(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
    ) -> RAGResponse:
        async with self.stream(query, context, sources, options) as stream:
            return await stream.collect()

    def stream(
        self,
        query: str,
        context: str,
        sources: Sequence[Source],
        options: Optional[ResponseOptions] = None,
    ) -> SynthesisStream:
        validate_inputs(query, context, sources)
        prompt = self.build_cli_prompt(query, context, options or ResponseOptions())
        return SynthesisStream(self._run(prompt, sources))

    async def _run(self, prompt: str, sources: Sequence[Source]):
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise not_installed_error() from e

        logger.debug("Started %s (pid %s)", self._command, proc.pid)
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(proc, prompt, queue))
        parts: List[str] = []
        finished = False

        try:
            while True:
                item = await queue.get()
                if isinstance(item, _ProcessExit):
                    exit_info = item
                    break
                parts.append(item)
                yield item
            # A failed pump leaves the tool running; only a clean exit counts
            finished = exit_info.error is None
        finally:
            await self._shutdown(proc, pump, finished)

        if exit_info.error is not None:
            raise ResponderError(
                f"Failed reading CLI output: {exit_info.error}",
                ErrorCode.UNKNOWN,
                self.responder,
            ) from exit_info.error

        answer = "".join(parts)
        if exit_info.returncode != 0:
            raise classify_cli_error(exit_info.stderr, answer, exit_info.returncode)

        yield RAGResponse(
            answer=answer,
            sources=list(sources),
            tokens_used=TokenUsage(input=estimate_tokens(prompt), output=estimate_tokens(answer)),
        )

    async def _feed_stdin(self, proc, prompt: str) -> None:
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Tool exited without reading its input; the exit status tells why
            logger.debug("%s closed stdin early", self._command)
        finally:
            proc.stdin.close()

    async def _pump(self, proc, prompt: str, queue: asyncio.Queue) -> None:
        """Push side of the bridge: stdout fragments, then one _ProcessExit."""
        writer = asyncio.create_task(self._feed_stdin(proc, prompt))
        stderr_reader = asyncio.create_task(proc.stderr.read())
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                data = await proc.stdout.read(self._read_size)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    queue.put_nowait(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                queue.put_nowait(tail)

            await writer
            stderr = (await stderr_reader).decode("utf-8", errors="replace")
            returncode = await proc.wait()
            queue.put_nowait(_ProcessExit(returncode=returncode, stderr=stderr))
        except Exception as e:
            logger.warning("CLI output pump failed: %s", e)
            queue.put_nowait(_ProcessExit(returncode=proc.returncode, error=e))
        finally:
            for task in (writer, stderr_reader):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def _shutdown(self, proc, pump: asyncio.Task, finished: bool) -> None:
        """Always leave with the pump finished and the process reaped."""
        if not finished and proc.returncode is None:
            logger.debug("Stopping %s (pid %s) before it exited", self._command, proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await pump
        if proc.returncode is None:
            await proc.wait()


@dataclass
class BackendSelection:
    backend: SynthesisBackend
    fallback: bool = False
    message: Optional[str] = None


def select_backend(
    config: DocragConfig,
    cli_backend: Optional[CliSynthesizer] = None,
    cloud_backend: Optional[CloudSynthesizer] = None,
    override: Optional[str] = None,
) -> BackendSelection:
    """
    Pick the synthesis backend for a query.

    An explicit override wins. Otherwise the configured responder is used,
    except that a missing CLI falls back to the cloud model.
    """
    cli_backend = cli_backend or CliSynthesizer(
        command=config.responder.cli_command,
        args=config.responder.cli_args,
    )
    cloud_backend = cloud_backend or CloudSynthesizer(
        model=config.llm.model,
        timeout_ms=config.llm.timeout_ms,
    )

    choice = (override or config.responder.type).lower()
    if choice == RESPONDER_CLOUD:
        logger.debug("Using cloud responder (%s)", "override" if override else "configured")
        return BackendSelection(backend=cloud_backend)
    if override:
        return BackendSelection(backend=cli_backend)

    if cli_backend.is_available():
        logger.debug("Using CLI responder")
        return BackendSelection(backend=cli_backend)

    message = "CLI tool not available, falling back to cloud responder"
    logger.warning(message)
    return BackendSelection(backend=cloud_backend, fallback=True, message=message)
