"""Streaming client for LangChain chat models.

Lets any ``BaseChatModel`` (``ChatOpenAI`` by default) serve completion
requests. Generation parameters travel as per-call keyword arguments so
one model instance can serve sessions with different settings.
"""

from typing import AsyncIterator

from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from ..config import LLMSettings
from ..conversation.session import transcript_to_langchain
from ..exceptions import ConfigurationError, LLMError
from ..logging import LoggerMixin
from .base import CompletionRequest, CompletionStream, StreamingClient


class LangChainCompletionStream(CompletionStream):
    """Text fragments of a ``BaseChatModel.astream`` call."""

    def __init__(self, chunks, model: str):
        self._chunks = chunks
        self._model = model
        self._closed = False

    async def fragments(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._chunks:
                if isinstance(chunk.content, str) and chunk.content:
                    yield chunk.content
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(
                f"Streaming failed: {e}",
                provider="langchain",
                model=self._model,
                details={"error": str(e)}
            ) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._chunks.aclose()


class LangChainStreamingClient(StreamingClient, LoggerMixin):
    """Streams completions through a LangChain chat model."""

    def __init__(self, chat_model: BaseChatModel):
        self.chat_model = chat_model

    @classmethod
    def from_settings(cls, config: LLMSettings, model_name: str) -> "LangChainStreamingClient":
        """Build a client around ``ChatOpenAI``.

        Raises:
            ConfigurationError: If API key is missing
        """
        if not config.api_key or not config.api_key.strip():
            raise ConfigurationError(
                "OpenAI API key is required but not provided",
                missing_keys=["api_key"],
                error_code="MISSING_API_KEY"
            )
        chat_model = ChatOpenAI(
            model=model_name,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.request_timeout,
            streaming=True,
        )
        return cls(chat_model)

    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        messages = transcript_to_langchain(request.messages)

        self.logger.debug(
            f"Opening LangChain stream for model {request.model} with {len(messages)} messages",
            extra={"extra_fields": {"model": request.model, "messages": len(messages)}}
        )

        if request.n > 1:
            self.logger.warning(
                f"LangChain streams a single choice; requested n={request.n} is sent as n=1",
                extra={"extra_fields": {"model": request.model, "requested_n": request.n}}
            )

        # Streamed chunks carry no choice index, so more than one choice would interleave
        chunks = self.chat_model.astream(
            messages,
            stop=request.stop_list,
            model=request.model,
            temperature=request.temperature,
            top_p=request.top_p,
            n=1,
            max_tokens=request.max_tokens,
            presence_penalty=request.presence_penalty,
            frequency_penalty=request.frequency_penalty,
        )
        return LangChainCompletionStream(chunks, request.model)
