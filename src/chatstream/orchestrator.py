"""Chat completion orchestrator.

This module implements the use case that runs one conversational turn:

    RESOLVING -> APPENDING -> STREAMING -> FINALIZING -> PERSISTING -> PERSISTED

or FAILED from any state. The session is loaded (or created and persisted),
the user message is appended under the context budget, the completion is
streamed while every fragment publishes the cumulative text to the caller's
sink, and the finished exchange is saved.

A failure after the user message was appended does not touch the store:
durable state stays as of the last successful persist, and a retried call
re-resolves the session and appends the same user message again. No retries
or compensating writes happen here; both are the caller's decision.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from .config import ChatSettings, get_settings
from .conversation.session import ChatSession, GenerationConfig, Message, ModelDescriptor
from .conversation.store import FileSessionStore, InMemorySessionStore, SessionStore
from .conversation.tokens import TokenCounter, count_tokens
from .exceptions import (
    ChatError,
    CompletionError,
    CompletionTimeoutError,
    SessionNotFoundError,
    SinkError,
    StreamingError,
)
from .llm.base import CompletionRequest, CompletionStream, StreamingClient
from .llm.client import OpenAIStreamingClient
from .llm.langchain_client import LangChainStreamingClient
from .logging import LoggerMixin, log_async_operation, log_stream_summary, setup_logging
from .models import ChatCompletionConfig, ChatCompletionInput, ChatCompletionOutput


class CompletionState(str, Enum):
    """Lifecycle of a single ``execute`` call."""

    RESOLVING = "resolving"
    APPENDING = "appending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    PERSISTING = "persisting"
    PERSISTED = "persisted"
    FAILED = "failed"


class OutputSink(Protocol):
    """Receiver of partial completions; ``asyncio.Queue`` satisfies it."""

    async def put(self, item: ChatCompletionOutput) -> None:
        ...


@dataclass
class _CallProgress:
    """Where a running ``execute`` call has got to."""

    chat_id: str
    state: CompletionState = CompletionState.RESOLVING


_STREAM_DONE = object()


class ChatCompletionOrchestrator(LoggerMixin):
    """Runs streaming chat completions against persisted conversations.

    The orchestrator holds no per-call state; concurrent calls for
    different chats are independent. Concurrent calls for the same chat id
    are only safe if the session store serializes them.

    Attributes:
        session_store: Durable home of the sessions
        streaming_client: Language model streaming client
        token_counter: Tokenizer used to cost new messages
        timeout_seconds: Optional per-call timeout
    """

    def __init__(
        self,
        session_store: SessionStore,
        streaming_client: StreamingClient,
        token_counter: TokenCounter = count_tokens,
        timeout_seconds: Optional[float] = None
    ):
        self.session_store = session_store
        self.streaming_client = streaming_client
        self.token_counter = token_counter
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Optional[ChatSettings] = None) -> "ChatCompletionOrchestrator":
        """Create an orchestrator with store and client chosen by configuration.

        Also configures package logging from ``settings.logging``.

        Raises:
            ConfigurationError: If the streaming client cannot be configured
        """
        settings = settings or get_settings()
        setup_logging(settings.logging, use_rich=settings.is_development)

        if settings.store.backend == "memory":
            session_store: SessionStore = InMemorySessionStore()
        else:
            session_store = FileSessionStore(settings.store.storage_dir)

        llm_config = settings.llm
        if not llm_config.api_key:
            llm_config = llm_config.model_copy(update={"api_key": settings.get_api_key()})

        if llm_config.backend == "langchain":
            streaming_client: StreamingClient = LangChainStreamingClient.from_settings(
                llm_config, settings.defaults.model
            )
        else:
            openai_client = OpenAIStreamingClient(llm_config)
            openai_client.initialize()
            streaming_client = openai_client

        return cls(session_store, streaming_client, timeout_seconds=settings.timeout_seconds)

    @log_async_operation("chat_completion")
    async def execute(
        self,
        completion_input: ChatCompletionInput,
        sink: OutputSink
    ) -> ChatCompletionOutput:
        """Run one conversational turn.

        Args:
            completion_input: Chat id, user id, user message and new-chat config
            sink: Receives one cumulative ``ChatCompletionOutput`` per fragment

        Returns:
            The final completion for the turn

        Raises:
            CompletionError: Wrapping the failure, with the state it happened in
            CompletionTimeoutError: If ``timeout_seconds`` elapsed
            asyncio.CancelledError: If the calling task was cancelled
        """
        progress = _CallProgress(chat_id=completion_input.chat_id)
        if self.timeout_seconds is None:
            return await self._execute(completion_input, sink, progress)

        try:
            return await asyncio.wait_for(
                self._execute(completion_input, sink, progress),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            stage = progress.state.value
            raise CompletionTimeoutError(
                f"Chat completion timed out after {self.timeout_seconds} seconds while {stage}",
                timeout_seconds=self.timeout_seconds,
                operation="execute",
                stage=stage,
                details={"chat_id": progress.chat_id}
            ) from None

    async def stream(
        self,
        completion_input: ChatCompletionInput
    ) -> AsyncIterator[ChatCompletionOutput]:
        """Run ``execute`` and yield its partial completions.

        Leaving the loop early cancels the turn. Errors of the turn are
        raised from the iterator once the buffered outputs are consumed.
        The internal queue is unbounded, so the turn never waits on the
        consumer.

        Args:
            completion_input: Same as for ``execute``
        """
        queue: asyncio.Queue = asyncio.Queue()

        task = asyncio.create_task(self.execute(completion_input, queue))
        task.add_done_callback(lambda _: queue.put_nowait(_STREAM_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_DONE:
                    break
                yield item
            await task
        finally:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError, ChatError):
                await task

    async def _execute(
        self,
        completion_input: ChatCompletionInput,
        sink: OutputSink,
        progress: _CallProgress
    ) -> ChatCompletionOutput:
        def advance(new_state: CompletionState) -> None:
            self.logger.debug(
                f"Chat {progress.chat_id}: {progress.state.value} -> {new_state.value}",
                extra={"extra_fields": {"chat_id": progress.chat_id, "state": new_state.value}}
            )
            progress.state = new_state

        try:
            session = await self._resolve_session(completion_input)
            progress.chat_id = session.id

            advance(CompletionState.APPENDING)
            user_message = Message.new(
                "user", completion_input.user_message, session.model, self.token_counter
            )
            session.append_message(user_message)

            advance(CompletionState.STREAMING)
            content = await self._stream_completion(session, completion_input.user_id, sink)

            advance(CompletionState.FINALIZING)
            assistant_message = Message.new(
                "assistant", content, session.model, self.token_counter
            )
            session.append_message(assistant_message)

            advance(CompletionState.PERSISTING)
            await self.session_store.save(session)

            advance(CompletionState.PERSISTED)
        except asyncio.CancelledError:
            self.logger.info(
                f"Chat {progress.chat_id} cancelled while {progress.state.value}; unsaved output discarded",
                extra={"extra_fields": {"chat_id": progress.chat_id, "state": progress.state.value}}
            )
            raise
        except Exception as e:
            failed_in = progress.state
            advance(CompletionState.FAILED)
            raise CompletionError(
                f"Chat completion failed while {failed_in.value}: {e}",
                stage=failed_in.value,
                cause=e,
                chat_id=progress.chat_id
            ) from e

        return ChatCompletionOutput(
            chat_id=session.id,
            user_id=completion_input.user_id,
            content=content
        )

    async def _resolve_session(self, completion_input: ChatCompletionInput) -> ChatSession:
        """Load the chat, or create and persist it on first reference."""
        chat_id = completion_input.chat_id
        if chat_id:
            try:
                return await self.session_store.find_by_id(chat_id)
            except SessionNotFoundError:
                pass

        session = self._create_session(completion_input)
        await self.session_store.create(session)

        self.logger.info(
            f"Created chat {session.id} for user {session.user_id} on model {session.model.name}",
            extra={"extra_fields": {
                "chat_id": session.id,
                "user_id": session.user_id,
                "model": session.model.name,
            }}
        )
        return session

    def _create_session(self, completion_input: ChatCompletionInput) -> ChatSession:
        config: ChatCompletionConfig = completion_input.config
        model = ModelDescriptor(name=config.model, max_tokens=config.model_max_tokens)
        generation = GenerationConfig(
            temperature=config.temperature,
            top_p=config.top_p,
            n=config.n,
            stop=frozenset(config.stop),
            max_tokens=config.max_tokens,
            presence_penalty=config.presence_penalty,
            frequency_penalty=config.frequency_penalty,
        )
        initial_message = Message.new(
            "system", config.initial_system_message, model, self.token_counter
        )
        return ChatSession.create(
            completion_input.user_id,
            initial_message,
            model,
            generation,
            session_id=completion_input.chat_id or None
        )

    async def _stream_completion(
        self,
        session: ChatSession,
        user_id: str,
        sink: OutputSink
    ) -> str:
        """Stream the answer, publishing the cumulative text after each fragment."""
        generation = session.generation
        request = CompletionRequest(
            model=session.model.name,
            messages=session.messages_as_transcript(),
            temperature=generation.temperature,
            top_p=generation.top_p,
            n=generation.n,
            stop=generation.stop,
            max_tokens=generation.max_tokens,
            presence_penalty=generation.presence_penalty,
            frequency_penalty=generation.frequency_penalty,
            stream=True,
        )

        start_time = time.time()
        try:
            stream = await self.streaming_client.open_stream(request)
        except Exception as e:
            raise StreamingError(
                f"Error creating chat completion: {e}",
                details={"chat_id": session.id, "model": request.model}
            ) from e

        content = ""
        fragments = 0
        try:
            async for fragment in stream:
                if not fragment:
                    continue
                content += fragment
                fragments += 1
                try:
                    await sink.put(ChatCompletionOutput(
                        chat_id=session.id,
                        user_id=user_id,
                        content=content
                    ))
                except Exception as e:
                    raise SinkError(
                        f"Sink rejected partial completion: {e}",
                        chunks_published=fragments - 1,
                        details={"chat_id": session.id}
                    ) from e
        except SinkError:
            raise
        except Exception as e:
            raise StreamingError(
                f"Error streaming response: {e}",
                partial_response=content,
                chunks_received=fragments,
                details={"chat_id": session.id, "model": request.model}
            ) from e
        finally:
            await self._close_stream(stream, session.id)

        log_stream_summary(
            self.logger,
            chat_id=session.id,
            fragments=fragments,
            characters=len(content),
            latency_ms=(time.time() - start_time) * 1000
        )
        return content

    async def _close_stream(self, stream: CompletionStream, chat_id: str) -> None:
        """Release the stream; a failing close is logged, never raised."""
        try:
            await stream.aclose()
        except Exception as e:
            self.logger.warning(
                f"Failed to close completion stream for chat {chat_id}: {e}",
                extra={"extra_fields": {"chat_id": chat_id, "error_type": type(e).__name__}}
            )
