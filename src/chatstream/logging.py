"""Logging configuration and utilities.

Console output goes through Rich in development; files rotate and can be
written as JSON for log shipping. Components attach structured context via
``extra={"extra_fields": {...}}`` which both formatters understand.
"""

import json
import logging
import logging.handlers
import sys
import time
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingSettings

console = Console(stderr=True)


# Default context attached to every chatstream logger
CHAT_CONTEXT = {
    "service": "chatstream",
}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread_name': record.threadName,
            'process': record.process,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Filter to add contextual information to log records."""

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.context = context or {}

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context to log record."""
        if self.context:
            extra_fields = dict(getattr(record, 'extra_fields', {}))
            for key, value in self.context.items():
                extra_fields.setdefault(key, value)
            record.extra_fields = extra_fields
        return True


def setup_logging(
    settings: Optional[LoggingSettings] = None,
    use_rich: bool = True,
    context: Optional[Dict[str, Any]] = None
) -> logging.Logger:
    """Set up logging for the chatstream package.

    Args:
        settings: Logging settings (environment defaults if None)
        use_rich: Whether to use Rich handler for console output
        context: Additional context to add to all log records

    Returns:
        The configured ``chatstream`` package logger
    """
    settings = settings or LoggingSettings()
    log_level = getattr(logging, settings.level.upper(), logging.INFO)

    package_logger = logging.getLogger("chatstream")
    package_logger.setLevel(log_level)
    package_logger.handlers.clear()
    package_logger.propagate = False

    # Attached to handlers: logger-level filters skip records from child loggers
    context_filter = ContextFilter({**CHAT_CONTEXT, **(context or {})})

    if use_rich:
        console_handler: logging.Handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True
        )
        console_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(settings.format))

    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    package_logger.addHandler(console_handler)

    if settings.file_path:
        log_dir = Path(settings.file_path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=settings.file_path,
            maxBytes=settings.max_file_size,
            backupCount=settings.backup_count,
            encoding='utf-8'
        )

        if settings.use_json:
            file_handler.setFormatter(JSONFormatter(datefmt='%Y-%m-%d %H:%M:%S'))
        else:
            file_handler.setFormatter(logging.Formatter(settings.format))

        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)
        package_logger.addHandler(file_handler)

    # Set third-party loggers to WARNING to reduce noise
    for logger_name in ["httpx", "httpcore", "openai", "langchain", "langchain_core", "langchain_openai"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return package_logger


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Get a logger with chatstream context.

    Args:
        name: Logger name (usually __name__)
        context: Additional context to add to all log records from this logger
    """
    logger = logging.getLogger(name)

    if context and not any(isinstance(f, ContextFilter) for f in logger.filters):
        logger.addFilter(ContextFilter(context))

    return logger


def log_async_operation(
    operation_name: str,
    logger: Optional[logging.Logger] = None
) -> Callable:
    """Decorator to log async operations with timing and context.

    Logs the start, completion, and any errors of the wrapped coroutine,
    including execution time. Cancellation is logged at debug level and
    re-raised untouched.

    Args:
        operation_name: Name of the operation being logged
        logger: Logger instance to use (defaults to the function's module logger)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            op_logger = logger or get_logger(func.__module__)
            start_time = time.time()

            op_logger.debug(
                f"Starting {operation_name}",
                extra={"extra_fields": {"operation": operation_name}}
            )

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                op_logger.error(
                    f"{operation_name} failed after {duration_ms:.2f}ms: {e}",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration_ms": duration_ms,
                        "status": "error",
                        "error_type": type(e).__name__
                    }}
                )
                raise
            except BaseException:
                op_logger.debug(
                    f"{operation_name} cancelled",
                    extra={"extra_fields": {"operation": operation_name, "status": "cancelled"}}
                )
                raise

            duration_ms = (time.time() - start_time) * 1000
            op_logger.info(
                f"{operation_name} completed in {duration_ms:.2f}ms",
                extra={"extra_fields": {
                    "operation": operation_name,
                    "duration_ms": duration_ms,
                    "status": "success"
                }}
            )
            return result

        return wrapper
    return decorator


def log_stream_summary(
    logger: logging.Logger,
    chat_id: str,
    fragments: int,
    characters: int,
    latency_ms: float
) -> None:
    """Log per-call streaming metrics in a parseable format.

    Args:
        logger: Logger instance to use
        chat_id: Conversation the stream belonged to
        fragments: Number of fragments published to the sink
        characters: Length of the final answer
        latency_ms: Time from opening the stream to end-of-stream
    """
    logger.info(
        f"Stream for chat {chat_id} finished: {fragments} fragments, "
        f"{characters} chars in {latency_ms:.2f}ms",
        extra={"extra_fields": {
            "chat_id": chat_id,
            "fragments": fragments,
            "characters": characters,
            "latency_ms": latency_ms,
            "metric_type": "stream"
        }}
    )


class LoggerMixin:
    """Mixin class to add chatstream logging to any class.

    Usage:
        class MyComponent(LoggerMixin):
            def do_something(self):
                self.logger.info("Doing something")
    """

    @property
    def logger(self) -> logging.Logger:
        """Get logger for this class."""
        if not hasattr(self, '_logger'):
            self._logger = get_logger(
                f"{self.__class__.__module__}.{self.__class__.__name__}",
                context={'class': self.__class__.__name__}
            )
        return self._logger
