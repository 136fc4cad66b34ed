"""Streaming chat completions over persisted, token-budgeted conversations.

Components:
- ChatSession: Ordered messages under a model's context budget, with
  oldest-first eviction of non-system history
- SessionStore: Persistence contract with in-memory and JSON file stores
- StreamingClient: Streaming completion contract with OpenAI and LangChain clients
- ChatCompletionOrchestrator: Runs one turn, publishing cumulative partial
  output to a caller-supplied sink and persisting the finished exchange
"""

from .config import ChatSettings, create_settings_from_yaml, get_settings
from .conversation import (
    ChatSession,
    FileSessionStore,
    GenerationConfig,
    InMemorySessionStore,
    Message,
    MessageRole,
    ModelDescriptor,
    SessionStore,
)
from .exceptions import (
    BudgetExceededError,
    ChatError,
    CompletionError,
    CompletionTimeoutError,
    ConfigurationError,
    LLMError,
    SessionNotFoundError,
    SinkError,
    StoreError,
    StreamingError,
    ValidationError,
)
from .llm import CompletionRequest, CompletionStream, StreamingClient
from .models import ChatCompletionConfig, ChatCompletionInput, ChatCompletionOutput
from .orchestrator import ChatCompletionOrchestrator, CompletionState, OutputSink

__all__ = [
    # Exceptions
    "ChatError",
    "ConfigurationError",
    "ValidationError",
    "BudgetExceededError",
    "SessionNotFoundError",
    "StoreError",
    "LLMError",
    "StreamingError",
    "SinkError",
    "CompletionError",
    "CompletionTimeoutError",
    # Configuration
    "ChatSettings",
    "get_settings",
    "create_settings_from_yaml",
    # Conversation
    "ChatSession",
    "GenerationConfig",
    "Message",
    "MessageRole",
    "ModelDescriptor",
    "SessionStore",
    "InMemorySessionStore",
    "FileSessionStore",
    # Streaming
    "CompletionRequest",
    "CompletionStream",
    "StreamingClient",
    # Orchestration
    "ChatCompletionConfig",
    "ChatCompletionInput",
    "ChatCompletionOutput",
    "ChatCompletionOrchestrator",
    "CompletionState",
    "OutputSink",
]
