"""Shared fixtures and fakes for chatstream tests."""

import asyncio
from typing import List, Optional

import pytest

from chatstream.conversation.session import GenerationConfig, Message, ModelDescriptor
from chatstream.llm.base import CompletionRequest, CompletionStream, StreamingClient
from chatstream.models import ChatCompletionConfig, ChatCompletionInput


def word_counter(text: str, model_name: str) -> int:
    """Deterministic token counter: one token per whitespace-separated word."""
    return len(text.split())


def words(n: int, word: str = "w") -> str:
    """Text costing exactly ``n`` tokens under ``word_counter``."""
    return " ".join([word] * n)


class FakeCompletionStream(CompletionStream):
    """Yields scripted fragments, optionally failing or blocking part way."""

    def __init__(
        self,
        fragments: List[str],
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        block_after: Optional[int] = None,
        close_error: Optional[Exception] = None
    ):
        self._fragments = fragments
        self._fail_after = fail_after
        self._error = error or ConnectionError("connection reset by peer")
        self._block_after = block_after
        self._close_error = close_error
        self.closed = False
        self.delivered = 0

    async def fragments(self):
        for index, fragment in enumerate(self._fragments):
            if self._fail_after is not None and index == self._fail_after:
                raise self._error
            if self._block_after is not None and index == self._block_after:
                await asyncio.Event().wait()
            await asyncio.sleep(0)
            self.delivered += 1
            yield fragment
        if self._fail_after is not None and self._fail_after >= len(self._fragments):
            raise self._error

    async def aclose(self) -> None:
        self.closed = True
        if self._close_error is not None:
            raise self._close_error


class FakeStreamingClient(StreamingClient):
    """Records requests and hands out scripted streams, one per call."""

    def __init__(self, *streams: FakeCompletionStream, open_error: Optional[Exception] = None):
        self._streams = list(streams)
        self._open_error = open_error
        self.requests: List[CompletionRequest] = []
        self.opened: List[FakeCompletionStream] = []

    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        self.requests.append(request)
        if self._open_error is not None:
            raise self._open_error
        stream = self._streams.pop(0)
        self.opened.append(stream)
        return stream


class RecordingSink:
    """Output sink that keeps every published record."""

    def __init__(self):
        self.items = []

    async def put(self, item) -> None:
        self.items.append(item)


@pytest.fixture
def model():
    return ModelDescriptor(name="gpt-4o-mini", max_tokens=100)


@pytest.fixture
def generation():
    return GenerationConfig(max_tokens=20)


@pytest.fixture
def make_message(model):
    """Factory for messages costed with ``word_counter``."""
    def _make(role: str, tokens: int, word: str = "w") -> Message:
        return Message.new(role, words(tokens, word), model, token_counter=word_counter)
    return _make


@pytest.fixture
def completion_config():
    return ChatCompletionConfig(
        model="gpt-4o-mini",
        model_max_tokens=100,
        temperature=0.2,
        top_p=0.9,
        n=1,
        stop=["\n\nUser:"],
        max_tokens=20,
        presence_penalty=0.1,
        frequency_penalty=0.3,
        initial_system_message="You are a concise assistant",
    )


@pytest.fixture
def make_input(completion_config):
    def _make(user_message: str = "What is the capital of France?", chat_id: str = "chat-1"):
        return ChatCompletionInput(
            chat_id=chat_id,
            user_id="user-1",
            user_message=user_message,
            config=completion_config,
        )
    return _make
