"""Unit tests for the OpenAI and LangChain streaming clients."""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from chatstream.config import LLMSettings
from chatstream.exceptions import ConfigurationError, LLMError
from chatstream.llm.base import CompletionRequest
from chatstream.llm.client import OpenAICompletionStream, OpenAIStreamingClient
from chatstream.llm.langchain_client import LangChainCompletionStream, LangChainStreamingClient

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def chunk(content, index=0):
    """Build an object shaped like a ``ChatCompletionChunk``."""
    return SimpleNamespace(
        choices=[SimpleNamespace(index=index, delta=SimpleNamespace(content=content))]
    )


class FakeSDKStream:
    """Stands in for ``openai.AsyncStream``."""

    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error
        self.close = AsyncMock()

    async def _iterate(self):
        for item in self._chunks:
            yield item
        if self._error is not None:
            raise self._error

    def __aiter__(self):
        return self._iterate()


@pytest.fixture
def request_():
    return CompletionRequest(
        model="gpt-4o-mini",
        messages=[
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ],
        temperature=0.2,
        top_p=0.9,
        n=1,
        stop=frozenset({"STOP", "END"}),
        max_tokens=20,
        presence_penalty=0.1,
        frequency_penalty=0.3,
    )


@pytest.fixture
def sdk_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


async def collect(stream):
    return [fragment async for fragment in stream]


class TestCompletionRequest:
    """Test request helpers."""

    def test_stop_list_is_sorted(self, request_):
        assert request_.stop_list == ["END", "STOP"]

    def test_stop_list_is_none_without_stop_sequences(self):
        request = CompletionRequest(model="gpt-4o-mini", messages=[])

        assert request.stop_list is None
        assert request.stream is True


class TestOpenAIStreamingClient:
    """Test the OpenAI SDK client."""

    def test_initialize_without_api_key_raises(self):
        client = OpenAIStreamingClient(LLMSettings(api_key=None))

        with pytest.raises(ConfigurationError) as exc_info:
            client.initialize()

        assert exc_info.value.error_code == "MISSING_API_KEY"

    def test_initialize_with_blank_api_key_raises(self):
        client = OpenAIStreamingClient(LLMSettings(api_key="   "))

        with pytest.raises(ConfigurationError) as exc_info:
            client.initialize()

        assert exc_info.value.error_code == "EMPTY_API_KEY"

    def test_initialize_builds_async_client(self):
        client = OpenAIStreamingClient(LLMSettings(api_key="sk-test", request_timeout=5))

        client.initialize()

        assert isinstance(client.async_client, openai.AsyncOpenAI)

    @pytest.mark.asyncio
    async def test_open_stream_before_initialize_raises(self, request_):
        client = OpenAIStreamingClient(LLMSettings(api_key="sk-test"))

        with pytest.raises(ConfigurationError) as exc_info:
            await client.open_stream(request_)

        assert exc_info.value.error_code == "CLIENT_NOT_INITIALIZED"

    @pytest.mark.asyncio
    async def test_open_stream_sends_generation_parameters(self, request_, sdk_client):
        sdk_client.chat.completions.create.return_value = FakeSDKStream([])
        client = OpenAIStreamingClient(LLMSettings(), async_client=sdk_client)

        await client.open_stream(request_)

        sdk_client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4o-mini",
            messages=request_.messages,
            temperature=0.2,
            top_p=0.9,
            n=1,
            stop=["END", "STOP"],
            max_tokens=20,
            presence_penalty=0.1,
            frequency_penalty=0.3,
            stream=True,
        )

    @pytest.mark.asyncio
    async def test_fragments_of_first_choice_in_order(self, request_, sdk_client):
        sdk_client.chat.completions.create.return_value = FakeSDKStream([
            chunk("Hel"),
            chunk("ignored", index=1),
            chunk(None),
            chunk("lo"),
            SimpleNamespace(choices=[]),
            chunk("!"),
        ])
        client = OpenAIStreamingClient(LLMSettings(), async_client=sdk_client)

        stream = await client.open_stream(request_)

        assert await collect(stream) == ["Hel", "lo", "!"]

    @pytest.mark.asyncio
    async def test_create_failure_becomes_llm_error(self, request_, sdk_client):
        response = httpx.Response(429, request=_REQUEST)
        sdk_client.chat.completions.create.side_effect = openai.RateLimitError(
            "Rate limit reached", response=response, body=None
        )
        client = OpenAIStreamingClient(LLMSettings(), async_client=sdk_client)

        with pytest.raises(LLMError) as exc_info:
            await client.open_stream(request_)

        assert exc_info.value.status_code == 429
        assert exc_info.value.provider == "openai"
        assert exc_info.value.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_mid_stream_failure_becomes_llm_error(self):
        sdk_stream = FakeSDKStream(
            [chunk("partial")], error=openai.APIConnectionError(request=_REQUEST)
        )
        stream = OpenAICompletionStream(sdk_stream, "gpt-4o-mini")
        received = []

        with pytest.raises(LLMError) as exc_info:
            async for fragment in stream:
                received.append(fragment)

        assert received == ["partial"]
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_aclose_closes_sdk_stream_once(self):
        sdk_stream = FakeSDKStream([])
        stream = OpenAICompletionStream(sdk_stream, "gpt-4o-mini")

        await stream.aclose()
        await stream.aclose()

        sdk_stream.close.assert_awaited_once()


class TestLangChainStreamingClient:
    """Test the LangChain chat model client."""

    def test_from_settings_without_api_key_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            LangChainStreamingClient.from_settings(LLMSettings(backend="langchain"), "gpt-4o-mini")

        assert exc_info.value.error_code == "MISSING_API_KEY"

    def test_from_settings_builds_chat_openai(self):
        client = LangChainStreamingClient.from_settings(
            LLMSettings(backend="langchain", api_key="sk-test"), "gpt-4o-mini"
        )

        assert client.chat_model.model_name == "gpt-4o-mini"
        assert client.chat_model.streaming is True

    @pytest.mark.asyncio
    async def test_fragments_concatenate_to_model_output(self, request_):
        chat_model = GenericFakeChatModel(messages=iter([AIMessage(content="Hello there friend")]))
        client = LangChainStreamingClient(chat_model)

        stream = await client.open_stream(request_)
        try:
            fragments = await collect(stream)
        finally:
            await stream.aclose()

        assert len(fragments) > 1
        assert "".join(fragments) == "Hello there friend"

    @pytest.mark.asyncio
    async def test_open_stream_passes_transcript_and_parameters(self, request_):
        calls = []

        async def astream(messages, **kwargs):
            calls.append((messages, kwargs))
            yield SimpleNamespace(content="ok")

        chat_model = MagicMock()
        chat_model.astream = astream
        client = LangChainStreamingClient(chat_model)

        stream = await client.open_stream(request_)
        assert await collect(stream) == ["ok"]

        messages, kwargs = calls[0]
        assert [m.content for m in messages] == ["Be brief", "Hi"]
        assert kwargs["stop"] == ["END", "STOP"]
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 20
        assert kwargs["frequency_penalty"] == 0.3
        assert kwargs["n"] == 1

    @pytest.mark.asyncio
    async def test_multiple_choices_requested_as_single_choice(self, request_):
        calls = []

        async def astream(messages, **kwargs):
            calls.append(kwargs)
            yield SimpleNamespace(content="only")

        chat_model = MagicMock()
        chat_model.astream = astream
        client = LangChainStreamingClient(chat_model)

        stream = await client.open_stream(replace(request_, n=3))

        assert await collect(stream) == ["only"]
        assert calls[0]["n"] == 1

    @pytest.mark.asyncio
    async def test_model_failure_becomes_llm_error(self):
        async def failing_chunks():
            yield SimpleNamespace(content="par")
            raise RuntimeError("upstream closed")

        stream = LangChainCompletionStream(failing_chunks(), "gpt-4o-mini")

        with pytest.raises(LLMError) as exc_info:
            await collect(stream)

        assert exc_info.value.provider == "langchain"
        assert "upstream closed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_text_chunks_are_skipped(self):
        async def chunks():
            yield SimpleNamespace(content="")
            yield SimpleNamespace(content=[{"type": "image"}])
            yield SimpleNamespace(content="text")

        stream = LangChainCompletionStream(chunks(), "gpt-4o-mini")

        assert await collect(stream) == ["text"]
