"""Streaming clients for language model services."""

from .base import CompletionRequest, CompletionStream, StreamingClient
from .client import OpenAICompletionStream, OpenAIStreamingClient
from .langchain_client import LangChainCompletionStream, LangChainStreamingClient

__all__ = [
    "CompletionRequest",
    "CompletionStream",
    "StreamingClient",
    "OpenAICompletionStream",
    "OpenAIStreamingClient",
    "LangChainCompletionStream",
    "LangChainStreamingClient",
]
