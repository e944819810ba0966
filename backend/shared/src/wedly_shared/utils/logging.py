"""Structured logging utilities with correlation ID support.

Provides:
- Correlation ID context management for request tracing
- A sanitizing filter so no log line carries emails, card numbers or secrets
- Severity-aware error logging for classified failures
- Helper functions for webhook and payment operation logging

Usage:
    from wedly_shared.utils.logging import get_logger, set_correlation_id

    # In middleware/request handler:
    set_correlation_id(request.headers.get("X-Request-ID"))

    # In service code:
    logger = get_logger(__name__)
    logger.info("Purchase persisted", extra={"session_id": "cs_123"})
"""

import logging
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from wedly_shared.models.errors import AppError, ErrorSeverity, classify_exception
from wedly_shared.utils.sanitize import sanitize_message, sanitize_value

if TYPE_CHECKING:
    from wedly_shared.models.context import RequestContext

# Context variable for correlation ID - thread-safe and async-safe
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        UUID-based correlation ID string
    """
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current request context.

    Args:
        correlation_id: Optional existing correlation ID. If None, generates new one.

    Returns:
        The correlation ID that was set
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID context."""
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Logging filter that adds correlation_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class SanitizingFilter(logging.Filter):
    """Logging filter that redacts sensitive values from the rendered message.

    The message is rendered once with its args and replaced, so handlers
    further down the chain never see the raw values.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            rendered = str(record.msg)
        record.msg = sanitize_message(rendered)
        record.args = None
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter for structured log output with correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "no-correlation-id"

        # Tracebacks bypass SanitizingFilter, so redact the final text too
        base = sanitize_message(super().format(record))

        # Correlation ID prefix for easy grep/filtering
        return f"[{record.correlation_id}] {base}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with correlation ID and sanitization support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    if not any(isinstance(f, SanitizingFilter) for f in logger.filters):
        logger.addFilter(SanitizingFilter())

    return logger


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install the structured formatter on the root handler.

    Args:
        level: Root log level
    """
    handler = logging.StreamHandler()
    handler.setFormatter(
        StructuredFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(SanitizingFilter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


_SEVERITY_LEVELS: dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


def log_error(
    logger: logging.Logger,
    error: BaseException,
    context: "RequestContext | None" = None,
) -> None:
    """Log a failure at the level implied by its severity.

    Unclassified exceptions are classified first, so every failure is logged
    with a category and severity.

    Args:
        logger: Logger instance
        error: AppError or raw exception
        context: Request context of the failing request, if any
    """
    app_error = error if isinstance(error, AppError) else classify_exception(error)

    fields: dict[str, Any] = {
        "category": app_error.category.value,
        "severity": app_error.severity.value,
        "http_status": app_error.http_status,
        "retryable": app_error.retryable,
        "error_type": type(error).__name__,
    }
    if context is not None:
        fields.update(context.log_fields())
    elif app_error.request_id:
        fields["request_id"] = app_error.request_id
    if app_error.context:
        fields["error_context"] = sanitize_value(app_error.context)

    msg_parts = [f"{app_error.severity.value.upper()} {app_error.category.value} error: {app_error.message}"]
    for key in ("endpoint", "event_id", "session_id"):
        if fields.get(key):
            msg_parts.append(f"{key}={fields[key]}")

    logger.log(
        _SEVERITY_LEVELS[app_error.severity],
        " | ".join(msg_parts),
        extra=fields,
    )


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    session_id: str | None = None,
    payment_intent_id: str | None = None,
    amount_minor_units: int | None = None,
    currency: str | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a payment operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name (e.g., "create_checkout_session", "persist_purchase")
        session_id: Checkout session ID if available
        payment_intent_id: Payment intent ID if available
        amount_minor_units: Amount in minor currency units if relevant
        currency: ISO 4217 currency code
        status: Payment/transaction status
        error: Error message if operation failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"operation": operation}

    if session_id:
        context["session_id"] = session_id
    if payment_intent_id:
        context["payment_intent_id"] = payment_intent_id
    if amount_minor_units is not None:
        context["amount_minor_units"] = amount_minor_units
    if currency:
        context["currency"] = currency
    if status:
        context["status"] = status
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Payment operation: {operation}"]
    for key, value in context.items():
        if key != "operation":
            msg_parts.append(f"{key}={value}")

    message = " | ".join(msg_parts)

    if error:
        logger.error(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    session_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a webhook event with structured context.

    Args:
        logger: Logger instance
        event_type: Provider event type (e.g., "checkout.session.completed")
        event_id: Provider event ID
        session_id: Associated checkout session ID if available
        result: Processing milestone (received, duplicate, claimed, success,
            unsupported_event, error)
        error: Error message if processing failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {
        "event_type": event_type,
        "event_id": event_id,
    }

    if session_id:
        context["session_id"] = session_id
    if result:
        context["result"] = result
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Webhook event: {event_type} ({event_id})"]
    if result:
        msg_parts.append(f"result={result}")
    if session_id:
        msg_parts.append(f"session={session_id}")
    if error:
        msg_parts.append(f"error={error}")

    message = " | ".join(msg_parts)

    if result == "error":
        logger.error(message, extra=context)
    elif result in ("duplicate", "unsupported_event"):
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)
