"""Custom exception classes for the chat completion core.

This module defines a hierarchy of exceptions specific to conversation
sessions and streaming completions, enabling callers to tell "nothing
happened" apart from "the user turn was recorded but the answer was lost".
"""

from typing import Any, Dict, List, Optional


class ChatError(Exception):
    """Base exception for chat completion errors.

    All chatstream exceptions inherit from this class,
    allowing for broad exception handling when needed.

    Attributes:
        message: Human-readable error description
        error_code: Optional machine-readable error code
        details: Optional dictionary with additional error context
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigurationError(ChatError):
    """Raised when configuration is invalid or missing.

    Attributes:
        missing_keys: List of missing configuration keys
    """

    def __init__(
        self,
        message: str,
        missing_keys: Optional[List[str]] = None,
        error_code: Optional[str] = "CONFIG_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.missing_keys = missing_keys or []
        details = details or {}
        if self.missing_keys:
            details["missing_keys"] = self.missing_keys
        super().__init__(message, error_code, details)


class ValidationError(ChatError):
    """Raised when a message, model descriptor or generation config is malformed.

    Validation errors are fatal and never retried.

    Attributes:
        field: Name of the offending field, when known
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: Optional[str] = "VALIDATION_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.field = field
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, error_code, details)


class BudgetExceededError(ChatError):
    """Raised when a message cannot fit the context window even after eviction.

    Attributes:
        required_tokens: Tokens the session would need, reservation included
        capacity: Maximum context tokens of the session's model
    """

    def __init__(
        self,
        message: str,
        required_tokens: int,
        capacity: int,
        error_code: Optional[str] = "BUDGET_EXCEEDED",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.required_tokens = required_tokens
        self.capacity = capacity
        details = details or {}
        details["required_tokens"] = required_tokens
        details["capacity"] = capacity
        super().__init__(message, error_code, details)


class SessionNotFoundError(ChatError):
    """Raised by a session store when no session exists for an id.

    Note: this is an expected outcome for the orchestrator, which reacts
    by creating a new session. It never reaches the caller of ``execute``.

    Attributes:
        session_id: ID that was looked up
    """

    def __init__(
        self,
        session_id: str,
        error_code: Optional[str] = "SESSION_NOT_FOUND",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.session_id = session_id
        details = details or {}
        details["session_id"] = session_id
        super().__init__(f"Session not found: {session_id}", error_code, details)


class StoreError(ChatError):
    """Raised when the persistence layer fails.

    Attributes:
        operation: Store operation that failed ("lookup", "create" or "save")
        session_id: ID of the session involved
    """

    def __init__(
        self,
        message: str,
        operation: str,
        session_id: Optional[str] = None,
        error_code: Optional[str] = "STORE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.operation = operation
        self.session_id = session_id
        details = details or {}
        details["operation"] = operation
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, error_code, details)


class LLMError(ChatError):
    """Raised when a streaming client call fails.

    Attributes:
        status_code: HTTP status code from the API response
        provider: Name of the LLM provider (e.g., "openai")
        model: Model name that was being used
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        error_code: Optional[str] = "LLM_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        self.model = model
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if provider:
            details["provider"] = provider
        if model:
            details["model"] = model
        super().__init__(message, error_code, details)


class StreamingError(ChatError):
    """Raised when a completion stream cannot be opened or fails mid-response.

    Attributes:
        partial_response: The text accumulated before the failure
        chunks_received: Number of fragments received before the failure
    """

    def __init__(
        self,
        message: str,
        partial_response: Optional[str] = None,
        chunks_received: int = 0,
        error_code: Optional[str] = "STREAMING_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.partial_response = partial_response
        self.chunks_received = chunks_received
        details = details or {}
        if partial_response is not None:
            details["partial_response"] = partial_response
        details["chunks_received"] = chunks_received
        super().__init__(message, error_code, details)


class SinkError(ChatError):
    """Raised when the caller's sink rejects a published fragment.

    Attributes:
        chunks_published: Number of fragments the sink accepted before the failure
    """

    def __init__(
        self,
        message: str,
        chunks_published: int = 0,
        error_code: Optional[str] = "SINK_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.chunks_published = chunks_published
        details = details or {}
        details["chunks_published"] = chunks_published
        super().__init__(message, error_code, details)


class CompletionError(ChatError):
    """Raised by the orchestrator when a completion call fails.

    Wraps the underlying error together with the state the call was in,
    so callers can distinguish a call that changed nothing from one that
    had already appended the user turn in memory.

    Attributes:
        stage: ``CompletionState`` value in which the failure happened
        cause: The underlying exception
    """

    def __init__(
        self,
        message: str,
        stage: str,
        cause: BaseException,
        chat_id: Optional[str] = None,
        error_code: Optional[str] = "COMPLETION_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.chat_id = chat_id
        details = details or {}
        details["stage"] = stage
        details["cause"] = type(cause).__name__
        if chat_id:
            details["chat_id"] = chat_id
        super().__init__(message, error_code, details)

    @property
    def user_turn_recorded(self) -> bool:
        """Whether the user message had been appended before the failure.

        The turn is only held in memory; the store still reflects the
        last successful persist.
        """
        return self.stage in ("streaming", "finalizing", "persisting")


class CompletionTimeoutError(ChatError):
    """Raised when a completion call exceeds its configured timeout.

    Attributes:
        timeout_seconds: The timeout value that was exceeded
        operation: Name of the operation that timed out
        stage: ``CompletionState`` value the call had reached, when known
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
        stage: Optional[str] = None,
        error_code: Optional[str] = "TIMEOUT_ERROR",
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        self.stage = stage
        details = details or {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        if operation:
            details["operation"] = operation
        if stage:
            details["stage"] = stage
        super().__init__(message, error_code, details)

    @property
    def user_turn_recorded(self) -> bool:
        """Whether the user message had been appended before the timeout."""
        return self.stage in ("streaming", "finalizing", "persisting")
