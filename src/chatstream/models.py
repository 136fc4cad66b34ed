"""Pydantic request and response models for chat completions."""

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ChatCompletionConfig(BaseModel):
    """Model descriptor, generation parameters and system prompt for a new chat.

    Only consulted when the chat does not exist yet; an existing session
    keeps the parameters it was created with.
    """

    model_config = ConfigDict(protected_namespaces=())

    model: str
    model_max_tokens: int
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: List[str] = Field(default_factory=list)
    max_tokens: int = 256
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    initial_system_message: str


class ChatCompletionInput(BaseModel):
    """One user turn submitted to the orchestrator."""

    chat_id: str
    user_id: str
    user_message: str
    config: ChatCompletionConfig


class ChatCompletionOutput(BaseModel):
    """Partial or final completion text for a chat.

    Each streamed record carries the cumulative text so far and replaces
    the previous one; it is not a delta.
    """

    model_config = ConfigDict(frozen=True)

    chat_id: str
    user_id: str
    content: str
