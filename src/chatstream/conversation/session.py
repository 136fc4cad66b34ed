"""Conversation session entities.

This module provides the model descriptor, generation parameters, messages
and the conversation session that owns them. The session enforces the
context budget on every append:

    sum(message token costs) + generation.max_tokens <= model.max_tokens

Only the first message may be a system message. When an append would break
the budget, the oldest messages after it are evicted first. If the new
message still does not fit, the append fails and the session is left
exactly as it was.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..exceptions import BudgetExceededError, ValidationError
from ..logging import get_logger
from .tokens import TokenCounter, count_tokens

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ModelDescriptor:
    """Name and context capacity of a language model.

    Attributes:
        name: Model identifier (e.g., "gpt-4o-mini")
        max_tokens: Maximum context tokens the model accepts
    """

    name: str
    max_tokens: int

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("Model name cannot be empty", field="name")
        if self.max_tokens <= 0:
            raise ValidationError(
                f"Model max_tokens must be positive, got: {self.max_tokens}",
                field="max_tokens"
            )


@dataclass(frozen=True)
class GenerationConfig:
    """Sampling parameters sent with every completion request of a session.

    ``max_tokens`` is reserved out of the context budget for the answer.
    """

    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: FrozenSet[str] = frozenset()
    max_tokens: int = 256
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "stop", frozenset(self.stop))

        if not 0.0 <= self.temperature <= 2.0:
            raise ValidationError(
                f"temperature must be between 0 and 2, got: {self.temperature}",
                field="temperature"
            )
        if not 0.0 <= self.top_p <= 1.0:
            raise ValidationError(
                f"top_p must be between 0 and 1, got: {self.top_p}", field="top_p"
            )
        if self.n < 1:
            raise ValidationError(f"n must be at least 1, got: {self.n}", field="n")
        if self.max_tokens <= 0:
            raise ValidationError(
                f"max_tokens must be positive, got: {self.max_tokens}", field="max_tokens"
            )
        for name in ("presence_penalty", "frequency_penalty"):
            value = getattr(self, name)
            if not -2.0 <= value <= 2.0:
                raise ValidationError(
                    f"{name} must be between -2 and 2, got: {value}", field=name
                )
        if any(not isinstance(s, str) or not s for s in self.stop):
            raise ValidationError("stop sequences must be non-empty strings", field="stop")


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.

    The token cost is computed once, under the model the message was
    created for, and travels with the message from then on.

    Attributes:
        role: Message author
        content: Message content text
        token_cost: Tokens the content consumes in the context window
        model_name: Model whose tokenizer produced ``token_cost``
        id: Unique message identifier
        created_at: When the message was created (UTC)
    """

    role: MessageRole
    content: str
    token_cost: int
    model_name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        """Validate message fields after initialization."""
        try:
            object.__setattr__(self, "role", MessageRole(self.role))
        except ValueError:
            raise ValidationError(
                f"Message role must be 'system', 'user' or 'assistant', got: {self.role}",
                field="role"
            ) from None
        if not self.content:
            raise ValidationError("Message content cannot be empty", field="content")
        if self.token_cost < 0:
            raise ValidationError(
                f"Message token_cost cannot be negative, got: {self.token_cost}",
                field="token_cost"
            )

    @classmethod
    def new(
        cls,
        role: str,
        content: str,
        model: ModelDescriptor,
        token_counter: TokenCounter = count_tokens
    ) -> "Message":
        """Create a message, costing its content under ``model``.

        Raises:
            ValidationError: If role or content is invalid
        """
        if not content:
            raise ValidationError("Message content cannot be empty", field="content")
        return cls(
            role=role,
            content=content,
            token_cost=token_counter(content, model.name),
            model_name=model.name,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "token_cost": self.token_cost,
            "model_name": self.model_name,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create Message from dictionary."""
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            token_cost=int(data["token_cost"]),
            model_name=data["model_name"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class ChatSession:
    """A conversation with a single model under a bounded context budget.

    Use ``ChatSession.create`` to start a conversation; the constructor is
    used for rehydration from storage and performs no budget checks.

    Attributes:
        id: Conversation identifier, fixed at creation
        user_id: Owner of the conversation
        model: Model descriptor the messages were costed under
        generation: Sampling parameters for every completion request
        messages: Live context, oldest first; index 0 is the system message
        erased_messages: Messages evicted to honour the budget, in eviction order
        created_at: When the session was created
        updated_at: When the session last changed
    """

    id: str
    user_id: str
    model: ModelDescriptor
    generation: GenerationConfig
    messages: List[Message] = field(default_factory=list)
    erased_messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(
        cls,
        user_id: str,
        initial_message: Message,
        model: ModelDescriptor,
        generation: GenerationConfig,
        session_id: Optional[str] = None
    ) -> "ChatSession":
        """Start a conversation seeded with a system message.

        Args:
            user_id: Owner of the conversation
            initial_message: System message costed under ``model``
            model: Model descriptor for the session
            generation: Sampling parameters for the session
            session_id: Conversation id (a uuid4 hex id is generated if None)

        Raises:
            ValidationError: If the seed message is unusable or cannot fit
        """
        if not user_id:
            raise ValidationError("user_id cannot be empty", field="user_id")
        if initial_message.role is not MessageRole.SYSTEM:
            raise ValidationError(
                f"Initial message must be a system message, got: {initial_message.role.value}",
                field="initial_message"
            )
        if initial_message.model_name != model.name:
            raise ValidationError(
                f"Initial message was costed for model '{initial_message.model_name}', "
                f"session uses '{model.name}'",
                field="initial_message"
            )
        if initial_message.token_cost > model.max_tokens:
            raise ValidationError(
                f"Initial message needs {initial_message.token_cost} tokens, "
                f"model '{model.name}' allows {model.max_tokens}",
                field="initial_message"
            )
        if initial_message.token_cost + generation.max_tokens > model.max_tokens:
            raise ValidationError(
                f"Initial message ({initial_message.token_cost} tokens) plus the "
                f"{generation.max_tokens} tokens reserved for completions exceeds "
                f"the {model.max_tokens} token context of '{model.name}'",
                field="max_tokens"
            )

        now = _utcnow()
        return cls(
            id=session_id or uuid.uuid4().hex,
            user_id=user_id,
            model=model,
            generation=generation,
            messages=[initial_message],
            created_at=now,
            updated_at=now,
        )

    @property
    def token_usage(self) -> int:
        """Total token cost of the live messages."""
        return sum(m.token_cost for m in self.messages)

    @property
    def available_tokens(self) -> int:
        """Tokens a new message may still use without any eviction."""
        return self.model.max_tokens - self.generation.max_tokens - self.token_usage

    def append_message(self, message: Message) -> None:
        """Append a message, evicting the oldest history if the budget requires it.

        Eviction removes the oldest messages after the system message first
        and is only committed if the new message then fits. The new message
        itself is never truncated.

        Raises:
            ValidationError: If the message is a system message or was costed
                for another model
            BudgetExceededError: If the message cannot fit even with all
                history evicted; the session is left unchanged
        """
        if message.role is MessageRole.SYSTEM:
            raise ValidationError(
                "Only the initial message of a session may be a system message",
                field="role"
            )
        if message.model_name != self.model.name:
            raise ValidationError(
                f"Message was costed for model '{message.model_name}', "
                f"session uses '{self.model.name}'",
                field="model_name"
            )

        capacity = self.model.max_tokens
        required = self.token_usage + message.token_cost + self.generation.max_tokens

        kept = list(self.messages)
        evicted: List[Message] = []
        while required > capacity:
            # Index 0 holds the system message
            if len(kept) <= 1:
                raise BudgetExceededError(
                    f"Message of {message.token_cost} tokens does not fit the "
                    f"{capacity} token context of '{self.model.name}' "
                    f"({required} tokens required after evicting all history)",
                    required_tokens=required,
                    capacity=capacity,
                    details={"session_id": self.id, "message_tokens": message.token_cost}
                )
            victim = kept.pop(1)
            evicted.append(victim)
            required -= victim.token_cost

        kept.append(message)
        self.messages = kept
        self.erased_messages.extend(evicted)
        self.updated_at = _utcnow()

        if evicted:
            logger.info(
                f"Evicted {len(evicted)} message(s) from session {self.id} to fit the context budget",
                extra={"extra_fields": {
                    "session_id": self.id,
                    "evicted": len(evicted),
                    "evicted_tokens": sum(m.token_cost for m in evicted),
                    "token_usage": self.token_usage,
                }}
            )

    def messages_as_transcript(self) -> List[Dict[str, str]]:
        """Return the live messages as ``{"role", "content"}`` dicts, oldest first."""
        return [{"role": m.role.value, "content": m.content} for m in self.messages]

    def to_langchain_messages(self) -> List[BaseMessage]:
        """Convert the live messages to LangChain message objects."""
        return transcript_to_langchain(self.messages_as_transcript())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "model": {"name": self.model.name, "max_tokens": self.model.max_tokens},
            "generation": {
                "temperature": self.generation.temperature,
                "top_p": self.generation.top_p,
                "n": self.generation.n,
                "stop": sorted(self.generation.stop),
                "max_tokens": self.generation.max_tokens,
                "presence_penalty": self.generation.presence_penalty,
                "frequency_penalty": self.generation.frequency_penalty,
            },
            "messages": [m.to_dict() for m in self.messages],
            "erased_messages": [m.to_dict() for m in self.erased_messages],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        """Create ChatSession from dictionary.

        Raises:
            ValidationError: If the stored session has no messages
        """
        generation = dict(data["generation"])
        generation["stop"] = frozenset(generation.get("stop", []))
        messages = [Message.from_dict(m) for m in data["messages"]]
        if not messages:
            raise ValidationError(
                f"Stored session {data['id']} has no messages", field="messages"
            )
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            model=ModelDescriptor(**data["model"]),
            generation=GenerationConfig(**generation),
            messages=messages,
            erased_messages=[Message.from_dict(m) for m in data.get("erased_messages", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def transcript_to_langchain(transcript: Iterable[Dict[str, str]]) -> List[BaseMessage]:
    """Convert ``{"role", "content"}`` dicts to LangChain messages."""
    langchain_messages: List[BaseMessage] = []

    for entry in transcript:
        role, content = entry["role"], entry["content"]
        if role == MessageRole.SYSTEM.value:
            langchain_messages.append(SystemMessage(content=content))
        elif role == MessageRole.USER.value:
            langchain_messages.append(HumanMessage(content=content))
        elif role == MessageRole.ASSISTANT.value:
            langchain_messages.append(AIMessage(content=content))
        else:
            raise ValidationError(f"Unknown transcript role: {role}", field="role")

    return langchain_messages
