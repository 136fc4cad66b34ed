"""OpenAI streaming client.

This module provides a streaming client backed by the OpenAI async SDK,
with API key validation and translation of SDK errors into ``LLMError``.
"""

from typing import AsyncIterator, Optional

from openai import APIStatusError, AsyncOpenAI, OpenAIError
from openai.types.chat import ChatCompletionChunk

from ..config import LLMSettings
from ..exceptions import ConfigurationError, LLMError
from ..logging import LoggerMixin
from .base import CompletionRequest, CompletionStream, StreamingClient


def _to_llm_error(e: OpenAIError, model: str, message: str) -> LLMError:
    status_code = e.status_code if isinstance(e, APIStatusError) else None
    return LLMError(
        f"{message}: {e}",
        status_code=status_code,
        provider="openai",
        model=model,
        details={"error": str(e)}
    )


class OpenAICompletionStream(CompletionStream):
    """Fragments of choice 0 from an OpenAI chat completion stream."""

    def __init__(self, stream, model: str):
        self._stream = stream
        self._model = model
        self._closed = False

    async def fragments(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._stream:
                chunk: ChatCompletionChunk
                for choice in chunk.choices:
                    if choice.index == 0 and choice.delta and choice.delta.content:
                        yield choice.delta.content
        except OpenAIError as e:
            raise _to_llm_error(e, self._model, "Streaming failed") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.close()


class OpenAIStreamingClient(StreamingClient, LoggerMixin):
    """OpenAI chat completion client for streaming requests.

    Attributes:
        config: LLM settings
        async_client: Asynchronous OpenAI client
    """

    def __init__(self, config: LLMSettings, async_client: Optional[AsyncOpenAI] = None):
        """Initialize the streaming client.

        Args:
            config: LLM settings including API key
            async_client: Pre-built SDK client (skips API key validation)
        """
        self.config = config
        self.async_client = async_client
        self._initialized = async_client is not None

    def initialize(self) -> None:
        """Initialize the OpenAI client with API key validation.

        Raises:
            ConfigurationError: If API key is missing or invalid
        """
        if self._initialized:
            return

        if not self.config.api_key:
            raise ConfigurationError(
                "OpenAI API key is required but not provided",
                missing_keys=["api_key"],
                error_code="MISSING_API_KEY"
            )

        if not self.config.api_key.strip():
            raise ConfigurationError(
                "OpenAI API key cannot be empty",
                error_code="EMPTY_API_KEY"
            )

        try:
            self.async_client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
            )
        except OpenAIError as e:
            raise ConfigurationError(
                f"Failed to initialize OpenAI client: {str(e)}",
                error_code="CLIENT_INIT_ERROR",
                details={"error": str(e)}
            ) from e

        self._initialized = True

    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        """Create a streaming chat completion.

        Raises:
            ConfigurationError: If client is not initialized
            LLMError: If the API rejects the request
        """
        if not self._initialized:
            raise ConfigurationError(
                "Streaming client must be initialized before use",
                error_code="CLIENT_NOT_INITIALIZED"
            )

        self.logger.debug(
            f"Opening stream for model {request.model} with {len(request.messages)} messages",
            extra={"extra_fields": {"model": request.model, "messages": len(request.messages)}}
        )

        try:
            stream = await self.async_client.chat.completions.create(
                model=request.model,
                messages=request.messages,
                temperature=request.temperature,
                top_p=request.top_p,
                n=request.n,
                stop=request.stop_list,
                max_tokens=request.max_tokens,
                presence_penalty=request.presence_penalty,
                frequency_penalty=request.frequency_penalty,
                stream=request.stream,
            )
        except OpenAIError as e:
            raise _to_llm_error(e, request.model, "Failed to create chat completion") from e

        return OpenAICompletionStream(stream, request.model)
