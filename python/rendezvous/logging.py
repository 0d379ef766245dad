"""Structured logging configuration using structlog.

Provides JSON-formatted logs with consistent context including:
- session_id: Correlation ID for one signed-in client session
- user_id: Authenticated user (when available)
- conversation_id: Conversation an operation is acting on
- channel: Realtime channel a handler is processing
- timestamp: ISO8601 formatted timestamp

Usage:
    from rendezvous.logging import get_logger, configure_logging

    # Configure once at startup
    configure_logging()

    # Get a logger for a module
    logger = get_logger(__name__)
    logger.info("something_happened", extra_field="value")

Never log message plaintext, ciphertext or conversation keys.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Context variables for session-scoped logging
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
conversation_id_var: ContextVar[str | None] = ContextVar("conversation_id", default=None)
channel_var: ContextVar[str | None] = ContextVar("channel", default=None)


def add_session_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Add session context to all log entries.

    Injects all non-None ContextVar values into the log event dict.
    Explicit keyword arguments on the log call win over context values.
    """
    session_id = session_id_var.get()
    user_id = user_id_var.get()
    conversation_id = conversation_id_var.get()
    channel = channel_var.get()

    if session_id:
        event_dict.setdefault("session_id", session_id)
    if user_id:
        event_dict.setdefault("user_id", user_id)
    if conversation_id:
        event_dict.setdefault("conversation_id", conversation_id)
    if channel:
        event_dict.setdefault("channel", channel)

    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Configure structlog for the client.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
    """
    # Shared processors for both stdlib and structlog loggers
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_session_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name.

    Args:
        name: Logger name (typically __name__).

    Returns:
        A bound structlog logger.
    """
    return structlog.get_logger(name)


def set_session_context(session_id: str | None, user_id: str | None = None) -> None:
    """Set session context for the current async context.

    Tasks created afterwards inherit these values.

    Args:
        session_id: The client session correlation ID.
        user_id: The authenticated user ID (optional).
    """
    session_id_var.set(session_id)
    if user_id is not None:
        user_id_var.set(user_id)


def set_conversation_context(conversation_id: str | None) -> None:
    """Set the conversation an operation is acting on."""
    conversation_id_var.set(conversation_id)


def set_channel_context(channel: str | None) -> None:
    """Set the realtime channel a handler is processing."""
    channel_var.set(channel)


def clear_session_context() -> None:
    """Clear all session-scoped context at sign-out."""
    session_id_var.set(None)
    user_id_var.set(None)
    conversation_id_var.set(None)
    channel_var.set(None)


def get_session_id() -> str | None:
    """Get the current session ID from context."""
    return session_id_var.get()
