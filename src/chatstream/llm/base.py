"""Streaming client contract.

A streaming client turns a ``CompletionRequest`` into a ``CompletionStream``:
an async iterator of text fragments. Exhausting the iterator is the
end-of-stream signal; any exception raised while iterating is a stream
failure. Callers must ``aclose()`` the stream when they stop reading,
including on cancellation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, FrozenSet, List, Optional


@dataclass(frozen=True)
class CompletionRequest:
    """Everything a streaming client needs to request a completion.

    Attributes:
        model: Model name
        messages: Ordered ``{"role", "content"}`` transcript
        temperature: Sampling temperature
        top_p: Nucleus sampling mass
        n: Number of choices to generate (only choice 0 is streamed)
        stop: Stop sequences
        max_tokens: Maximum tokens of the answer
        presence_penalty: Presence penalty
        frequency_penalty: Frequency penalty
        stream: Always True for this package
    """

    model: str
    messages: List[Dict[str, str]]
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: FrozenSet[str] = field(default_factory=frozenset)
    max_tokens: int = 256
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    stream: bool = True

    @property
    def stop_list(self) -> Optional[List[str]]:
        """Stop sequences in a stable order, or None when there are none."""
        return sorted(self.stop) or None


class CompletionStream(ABC):
    """Async iterator of completion text fragments."""

    def __aiter__(self) -> AsyncIterator[str]:
        return self.fragments()

    @abstractmethod
    def fragments(self) -> AsyncIterator[str]:
        """Yield text fragments in the order the model produced them."""

    @abstractmethod
    async def aclose(self) -> None:
        """Abort the underlying request and release its connection."""


class StreamingClient(ABC):
    """Opens streaming completion requests against a language model service."""

    @abstractmethod
    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        """Issue ``request`` and return its fragment stream.

        Raises:
            LLMError: If the request cannot be issued
        """
