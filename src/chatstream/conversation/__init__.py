"""Conversation sessions, token accounting and session persistence."""

from .session import (
    ChatSession,
    GenerationConfig,
    Message,
    MessageRole,
    ModelDescriptor,
    transcript_to_langchain,
)
from .store import FileSessionStore, InMemorySessionStore, SessionStore
from .tokens import TokenCounter, count_tokens

__all__ = [
    "ChatSession",
    "GenerationConfig",
    "Message",
    "MessageRole",
    "ModelDescriptor",
    "transcript_to_langchain",
    "SessionStore",
    "InMemorySessionStore",
    "FileSessionStore",
    "TokenCounter",
    "count_tokens",
]
