"""Tests for LLMClient provider abstraction."""

import pytest
from unittest.mock import AsyncMock, Mock

from docrag.common.llm_client import LLMClient, LLMUsage


async def _aiter(items):
    for item in items:
        yield item


class TestLLMClientInit:
    @pytest.mark.parametrize("provider", ["google", "anthropic", "openai"])
    def test_missing_key_logs_info(self, provider, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="docrag.common.llm_client"):
            client = LLMClient(provider=provider)
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        import logging
        with caplog.at_level(logging.WARNING, logger="docrag.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_from_config_picks_provider_model(self):
        from docrag.common.config import LLMConfig
        client = LLMClient.from_config(LLMConfig(provider="openai"))
        assert client.provider == "openai"
        assert client.model == "gpt-4o-mini"


class TestLLMClientGenerate:
    @pytest.mark.asyncio
    async def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(RuntimeError, match="not available"):
            await client.generate("test")

    @pytest.mark.asyncio
    async def test_anthropic_generate_normalizes_usage(self):
        client = LLMClient(provider="anthropic", model="claude-test")
        response = Mock(
            content=[Mock(type="text", text="Hello "), Mock(type="text", text="world")],
            usage=Mock(input_tokens=12, output_tokens=3),
        )
        client._client = Mock()
        client._client.messages.create = AsyncMock(return_value=response)

        result = await client.generate("hi", system="be brief", max_tokens=50, temperature=0.2)

        assert result.text == "Hello world"
        assert result.usage == LLMUsage(input_tokens=12, output_tokens=3)
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["model"] == "claude-test"
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_openai_generate_sends_system_message(self):
        client = LLMClient(provider="openai", model="gpt-test")
        response = Mock(
            choices=[Mock(message=Mock(content="answer"))],
            usage=Mock(prompt_tokens=7, completion_tokens=2),
        )
        client._client = Mock()
        client._client.chat.completions.create = AsyncMock(return_value=response)

        result = await client.generate("question", system="sys")

        assert result.text == "answer"
        assert result.usage.total == 9
        messages = client._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_model_argument_overrides_default(self):
        client = LLMClient(provider="openai", model="gpt-default")
        client._client = Mock()
        client._client.chat.completions.create = AsyncMock(return_value=Mock(
            choices=[Mock(message=Mock(content="x"))], usage=None,
        ))

        await client.generate("q", model="gpt-other")

        assert client._client.chat.completions.create.call_args.kwargs["model"] == "gpt-other"


class TestLLMClientStream:
    @pytest.mark.asyncio
    async def test_openai_stream_yields_text_and_usage(self):
        client = LLMClient(provider="openai", model="gpt-test")
        chunks = [
            Mock(choices=[Mock(delta=Mock(content="Hel"))], usage=None),
            Mock(choices=[Mock(delta=Mock(content="lo"))], usage=None),
            Mock(choices=[], usage=Mock(prompt_tokens=5, completion_tokens=2)),
        ]
        client._client = Mock()
        client._client.chat.completions.create = AsyncMock(return_value=_aiter(chunks))

        received = [c async for c in client.stream("q")]

        assert "".join(c.text for c in received) == "Hello"
        assert received[-1].usage == LLMUsage(input_tokens=5, output_tokens=2)

    @pytest.mark.asyncio
    async def test_anthropic_stream_tracks_usage(self):
        client = LLMClient(provider="anthropic", model="claude-test")
        events = [
            Mock(type="message_start", message=Mock(usage=Mock(input_tokens=20))),
            Mock(type="content_block_delta", delta=Mock(type="text_delta", text="Hi")),
            Mock(type="message_delta", usage=Mock(output_tokens=4)),
        ]
        client._client = Mock()
        client._client.messages.create = AsyncMock(return_value=_aiter(events))

        received = [c async for c in client.stream("q")]

        assert "".join(c.text for c in received) == "Hi"
        assert received[-1].usage == LLMUsage(input_tokens=20, output_tokens=4)

    @pytest.mark.asyncio
    async def test_stream_raises_when_unavailable(self):
        client = LLMClient(provider="google")
        with pytest.raises(RuntimeError, match="not available"):
            async for _ in client.stream("q"):
                pass


class TestGoogleChunkText:
    def test_joins_parts(self):
        from docrag.common.llm_client import _google_chunk_text
        chunk = Mock(candidates=[Mock(content=Mock(parts=[Mock(text="a"), Mock(text="b")]))])
        assert _google_chunk_text(chunk) == "ab"

    def test_blocked_prompt_raises(self):
        from docrag.common.llm_client import _google_chunk_text
        chunk = Mock(candidates=[], prompt_feedback=Mock(block_reason="SAFETY"))
        with pytest.raises(ValueError, match="blocked"):
            _google_chunk_text(chunk)


class TestSingleton:
    def test_get_returns_same_instance_until_reset(self):
        from docrag.common.config import LLMConfig
        from docrag.common.llm_client import get_llm_client, reset_llm_client

        reset_llm_client()
        try:
            first = get_llm_client(LLMConfig(provider="openai"))
            assert get_llm_client() is first

            reset_llm_client()
            second = get_llm_client(LLMConfig(provider="anthropic"))
            assert second is not first
            assert second.provider == "anthropic"
            # Holders of the old instance keep a working reference
            assert first.provider == "openai"
        finally:
            reset_llm_client()

    def test_concurrent_first_use_constructs_once(self):
        import threading
        import time
        from unittest.mock import patch

        from docrag.common.config import LLMConfig
        from docrag.common.llm_client import get_llm_client, reset_llm_client

        workers = 8
        barrier = threading.Barrier(workers)
        built = []
        results = []
        results_lock = threading.Lock()

        def slow_factory(config):
            time.sleep(0.05)
            client = Mock(provider=config.provider)
            built.append(client)
            return client

        def worker():
            barrier.wait()
            client = get_llm_client(LLMConfig(provider="google"))
            with results_lock:
                results.append(client)

        reset_llm_client()
        try:
            with patch.object(LLMClient, "from_config", side_effect=slow_factory):
                threads = [threading.Thread(target=worker) for _ in range(workers)]
                for t in threads:
                    t.start()
                for t in threads:
                    t.join(timeout=5)

            assert len(built) == 1
            assert len(results) == workers
            assert all(client is built[0] for client in results)
        finally:
            reset_llm_client()
