"""Webhook event handling behind signature verification.

Provides the ledger bracket around event processing separate from HTTP
routing concerns: duplicate short-circuit, claim, dispatch by event kind,
and exactly one finalization on every exit path.
"""

import asyncio
from typing import Literal

from pydantic import BaseModel

from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import (
    AppError,
    ErrorCategory,
    ErrorSeverity,
    classify_exception,
    create_error,
)
from wedly_shared.models.webhook import (
    IdempotencyStatus,
    WebhookEvent,
    WebhookEventKind,
    idempotency_key_for,
)
from wedly_shared.services.idempotency import IdempotencyLedger
from wedly_shared.services.purchase_processor import PurchaseOutcome, PurchaseProcessor
from wedly_shared.services.retry import with_database_retry
from wedly_shared.utils.logging import get_logger, log_error, log_webhook_event

logger = get_logger(__name__)

ALREADY_PROCESSED = "already processed"


class WebhookOutcome(BaseModel):
    """Result of handling one verified event."""

    event_id: str
    result: Literal["success", "duplicate", "unsupported_event"]
    message: str
    purchase: PurchaseOutcome | None = None


def _ledger_error(message: str, severity: ErrorSeverity, error: BaseException) -> AppError:
    return create_error(
        f"{message}: {error}",
        ErrorCategory.DATABASE,
        severity,
        503,
        "Service temporarily unavailable. Please try again in a moment.",
        retryable=True,
    )


class WebhookHandler:
    """Handler for verified payment-provider events.

    Usage:
        handler = WebhookHandler(IdempotencyLedger(), PurchaseProcessor())
        outcome = await handler.handle(event, context, payload_hash=digest)
    """

    def __init__(
        self,
        ledger: IdempotencyLedger | None = None,
        processor: PurchaseProcessor | None = None,
    ) -> None:
        self._ledger = ledger or IdempotencyLedger()
        self._processor = processor or PurchaseProcessor()

    async def handle(
        self,
        event: WebhookEvent,
        context: RequestContext,
        *,
        payload_hash: str | None = None,
    ) -> WebhookOutcome:
        """Apply one event at most once.

        Args:
            event: Verified event
            context: Request context for correlation
            payload_hash: SHA-256 of the raw body, stored on the ledger record

        Returns:
            WebhookOutcome; duplicates are reported, not raised

        Raises:
            AppError: When the ledger is unreachable or processing failed;
                the record is marked ``error`` before raising
        """
        key = idempotency_key_for(event.id)
        context.event_id = event.id
        log_webhook_event(logger, event.type, event.id, result="received", livemode=event.livemode)

        try:
            existing = await with_database_retry(
                lambda: asyncio.to_thread(self._ledger.check_existing, key), context
            )
        except Exception as e:
            raise _ledger_error("Idempotency lookup failed", ErrorSeverity.HIGH, e) from e

        if existing is not None:
            log_webhook_event(
                logger, event.type, event.id, result="duplicate", ledger_status=existing.status.value
            )
            return WebhookOutcome(event_id=event.id, result="duplicate", message=ALREADY_PROCESSED)

        try:
            claimed = await asyncio.to_thread(
                self._ledger.begin,
                key,
                event.id,
                event.type,
                payload_hash=payload_hash,
                livemode=event.livemode,
            )
        except Exception as e:
            raise _ledger_error("Idempotency claim failed", ErrorSeverity.CRITICAL, e) from e

        if not claimed:
            log_webhook_event(logger, event.type, event.id, result="duplicate", race=True)
            return WebhookOutcome(event_id=event.id, result="duplicate", message=ALREADY_PROCESSED)

        log_webhook_event(logger, event.type, event.id, result="claimed")

        try:
            if event.kind is not WebhookEventKind.CHECKOUT_SESSION_COMPLETED:
                await self._complete(
                    key, IdempotencyStatus.UNSUPPORTED_EVENT, context, f"Unsupported event type: {event.type}"
                )
                log_webhook_event(logger, event.type, event.id, result="unsupported_event")
                return WebhookOutcome(
                    event_id=event.id, result="unsupported_event", message="Event type not handled"
                )

            purchase = await self._processor.process(event, context)
        except Exception as e:
            app_error = classify_exception(e, request_id=context.request_id)
            await self._complete(key, IdempotencyStatus.ERROR, context, app_error.message)
            log_webhook_event(
                logger,
                event.type,
                event.id,
                session_id=context.session_id,
                result="error",
                error=app_error.message,
            )
            if app_error is e:
                raise
            raise app_error from e

        if not purchase.paid:
            await self._complete(key, IdempotencyStatus.UNSUPPORTED_EVENT, context, purchase.note)
            log_webhook_event(
                logger, event.type, event.id, session_id=purchase.session_id, result="unsupported_event"
            )
            return WebhookOutcome(
                event_id=event.id,
                result="unsupported_event",
                message="Payment not completed",
                purchase=purchase,
            )

        await self._complete(key, IdempotencyStatus.SUCCESS, context, purchase.note)
        log_webhook_event(
            logger,
            event.type,
            event.id,
            session_id=purchase.session_id,
            result="success",
            email_sent=purchase.email_sent,
        )
        return WebhookOutcome(
            event_id=event.id, result="success", message="Webhook processed", purchase=purchase
        )

    async def _complete(
        self,
        key: str,
        status: IdempotencyStatus,
        context: RequestContext,
        note: str | None = None,
    ) -> None:
        """Finalize the record; a failure here leaves it stuck and is logged as CRITICAL."""
        try:
            await with_database_retry(
                lambda: asyncio.to_thread(self._ledger.complete, key, status, note), context
            )
        except Exception as e:
            log_error(
                logger,
                _ledger_error(f"Could not finalize {key} as {status.value}", ErrorSeverity.CRITICAL, e),
                context,
            )
