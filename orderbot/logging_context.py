"""Correlation ID logging context for tracing a customer's turn across modules.

Provides an identity-aware logger that attaches the conversation identity
(the customer's phone-like address) to every log message, so a single
turn can be followed from the inbound message down to the order commit.

Usage:
    from orderbot.logging_context import get_call_logger, set_call_id

    set_call_id("5511999990000")
    logger = get_call_logger(__name__)
    logger.info("Processing message")  # record.call_id == "5511999990000"
"""

import logging
from contextvars import ContextVar

_call_id: ContextVar[str] = ContextVar("call_id", default="NO_IDENTITY")


def set_call_id(call_id: str) -> None:
    """Set the correlation ID for the current async context."""
    _call_id.set(call_id)


def get_call_id() -> str:
    """Retrieve the current correlation ID."""
    return _call_id.get()


class CallIdFilter(logging.Filter):
    """Injects call_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.call_id = _call_id.get()  # type: ignore[attr-defined]
        return True


def get_call_logger(name: str) -> logging.Logger:
    """Return a logger with the CallIdFilter attached.

    The filter adds ``call_id`` to each record so formatters can
    include ``%(call_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, CallIdFilter) for f in logger.filters):
        logger.addFilter(CallIdFilter())
    return logger
