"""Logging helpers that tag every line with a correlation ID.

The correlation ID lives in a ContextVar, so it follows a request through
the HTTP layer and a webhook through a consumer thread without being passed
around explicitly.

Usage:
    from paycore.utils.logging import get_logger, correlation_scope

    logger = get_logger(__name__)
    with correlation_scope(event.correlation_id):
        logger.info("Reconciling event")
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from paycore.models.money import Money

NO_CORRELATION_ID = "no-correlation-id"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current context, generating one if absent.

    Returns:
        The correlation ID that was set
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block, then restore."""
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get() or NO_CORRELATION_ID
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Adds ``correlation_id`` to every record passing through."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


class StructuredFormatter(logging.Formatter):
    """Prefixes each formatted line with ``[correlation_id]``."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return f"[{record.correlation_id}] {super().format(record)}"


def configure_logging(level: str = "INFO") -> None:
    """Install a stdout handler with the structured formatter on the root logger.

    Safe to call more than once; an existing structured handler is reused.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in root.handlers:
        if isinstance(handler.formatter, StructuredFormatter):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with correlation ID support.

    Args:
        name: Logger name (usually __name__)
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger


def _join(head: str, context: dict[str, Any], skip: tuple[str, ...]) -> str:
    parts = [head]
    parts.extend(f"{key}={value}" for key, value in context.items() if key not in skip)
    return " | ".join(parts)


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    transaction_id: str | None = None,
    subscription_id: str | None = None,
    order_id: str | None = None,
    amount: Money | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a payment or subscription command with ``key=value`` context.

    Logged at ERROR when ``error`` is given, INFO otherwise.

    Args:
        logger: Logger instance
        operation: Operation name (e.g., "capture", "subscribe")
        transaction_id: Local transaction ID if available
        subscription_id: Local subscription ID if available
        order_id: Merchant order ID if available
        amount: Amount involved, if relevant
        status: Resulting status
        error: Error code or message if the operation failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"operation": operation}
    if transaction_id:
        context["transaction_id"] = transaction_id
    if subscription_id:
        context["subscription_id"] = subscription_id
    if order_id:
        context["order_id"] = order_id
    if amount is not None:
        context["amount"] = str(amount)
    if status:
        context["status"] = status
    if error:
        context["error"] = error
    context.update(extra)

    message = _join(f"Payment operation: {operation}", context, ("operation",))
    if error:
        logger.error(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    transaction_id: str | None = None,
    subscription_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a webhook event with structured context.

    ``result`` drives the level: "error" logs at ERROR, "duplicate" and
    "stale" at WARNING, anything else at INFO.
    """
    context: dict[str, Any] = {"event_type": event_type, "event_id": event_id}
    if transaction_id:
        context["transaction_id"] = transaction_id
    if subscription_id:
        context["subscription_id"] = subscription_id
    if result:
        context["result"] = result
    if error:
        context["error"] = error
    context.update(extra)

    message = _join(
        f"Webhook event: {event_type} ({event_id})",
        context,
        ("event_type", "event_id"),
    )
    if result == "error":
        logger.error(message, extra=context)
    elif result in ("duplicate", "stale"):
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)
