"""Unit tests for the ledger bracket around webhook processing."""

import asyncio
import datetime as dt
from unittest.mock import AsyncMock, MagicMock

import pytest

from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import AppError, ErrorCategory, ErrorSeverity, create_error
from wedly_shared.models.webhook import IdempotencyRecord, IdempotencyStatus, WebhookEvent
from wedly_shared.services.purchase_processor import PurchaseOutcome
from wedly_shared.services.webhook_handler import ALREADY_PROCESSED, WebhookHandler


@pytest.fixture
def ledger() -> MagicMock:
    ledger = MagicMock()
    ledger.check_existing.return_value = None
    ledger.begin.return_value = True
    ledger.complete.return_value = True
    return ledger


@pytest.fixture
def processor() -> MagicMock:
    processor = MagicMock()
    processor.process = AsyncMock(
        return_value=PurchaseOutcome(
            session_id="cs_1", purchase_created=True, entitlement_updated=True, email_sent=True
        )
    )
    return processor


@pytest.fixture
def handler(ledger: MagicMock, processor: MagicMock) -> WebhookHandler:
    return WebhookHandler(ledger=ledger, processor=processor)


@pytest.fixture
def event(checkout_event) -> WebhookEvent:
    return WebhookEvent.from_provider(checkout_event)


@pytest.fixture
def context() -> RequestContext:
    return RequestContext(request_id="req-1", method="POST", endpoint="/webhooks/payment")


class TestHandle:
    def test_success_claims_processes_and_completes(self, handler, ledger, processor, event, context):
        outcome = asyncio.run(handler.handle(event, context, payload_hash="hash"))

        assert outcome.result == "success"
        assert outcome.event_id == "evt_1"
        assert outcome.purchase.email_sent is True
        ledger.begin.assert_called_once_with(
            "webhook_evt_1", "evt_1", "checkout.session.completed", payload_hash="hash", livemode=False
        )
        processor.process.assert_awaited_once_with(event, context)
        ledger.complete.assert_called_once_with("webhook_evt_1", IdempotencyStatus.SUCCESS, None)

    def test_existing_record_is_duplicate(self, handler, ledger, processor, event, context):
        ledger.check_existing.return_value = IdempotencyRecord(
            idempotency_key="webhook_evt_1",
            event_id="evt_1",
            event_type="checkout.session.completed",
            status=IdempotencyStatus.SUCCESS,
            started_at=dt.datetime.now(dt.UTC),
        )

        outcome = asyncio.run(handler.handle(event, context))

        assert outcome.result == "duplicate"
        assert outcome.message == ALREADY_PROCESSED
        ledger.begin.assert_not_called()
        processor.process.assert_not_called()
        ledger.complete.assert_not_called()

    def test_lost_claim_is_duplicate(self, handler, ledger, processor, event, context):
        ledger.begin.return_value = False

        outcome = asyncio.run(handler.handle(event, context))

        assert outcome.result == "duplicate"
        processor.process.assert_not_called()
        ledger.complete.assert_not_called()

    def test_unsupported_event_is_finalized(self, handler, ledger, processor, context):
        event = WebhookEvent.from_provider(
            {"id": "evt_2", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        )

        outcome = asyncio.run(handler.handle(event, context))

        assert outcome.result == "unsupported_event"
        assert outcome.message == "Event type not handled"
        processor.process.assert_not_called()
        ledger.complete.assert_called_once_with(
            "webhook_evt_2", IdempotencyStatus.UNSUPPORTED_EVENT, "Unsupported event type: customer.created"
        )

    def test_unpaid_session_is_finalized_as_unsupported(self, handler, ledger, processor, event, context):
        processor.process.return_value = PurchaseOutcome(session_id="cs_1", paid=False, note="not paid")

        outcome = asyncio.run(handler.handle(event, context))

        assert outcome.result == "unsupported_event"
        assert outcome.message == "Payment not completed"
        ledger.complete.assert_called_once_with("webhook_evt_1", IdempotencyStatus.UNSUPPORTED_EVENT, "not paid")

    def test_processing_failure_marks_error_and_raises(self, handler, ledger, processor, event, context):
        failure = create_error(
            "Failed to persist purchase",
            ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL,
            503,
            "Service temporarily unavailable.",
            retryable=True,
        )
        processor.process.side_effect = failure

        with pytest.raises(AppError) as exc_info:
            asyncio.run(handler.handle(event, context))

        assert exc_info.value is failure
        ledger.complete.assert_called_once_with(
            "webhook_evt_1", IdempotencyStatus.ERROR, "Failed to persist purchase"
        )

    def test_raw_failure_is_classified(self, handler, ledger, processor, event, context):
        processor.process.side_effect = RuntimeError("kaboom")

        with pytest.raises(AppError) as exc_info:
            asyncio.run(handler.handle(event, context))

        assert exc_info.value.category is ErrorCategory.INTERNAL
        assert exc_info.value.request_id == "req-1"
        assert ledger.complete.call_args.args[1] is IdempotencyStatus.ERROR


class TestLedgerFailures:
    def test_lookup_failure_is_database_error(self, handler, ledger, processor, event, context, no_retry_sleep):
        ledger.check_existing.side_effect = ConnectionError("connection refused")

        with pytest.raises(AppError) as exc_info:
            asyncio.run(handler.handle(event, context))

        assert exc_info.value.category is ErrorCategory.DATABASE
        assert exc_info.value.http_status == 503
        assert ledger.check_existing.call_count == 2
        processor.process.assert_not_called()

    def test_claim_failure_is_not_retried(self, handler, ledger, processor, event, context, no_retry_sleep):
        ledger.begin.side_effect = ConnectionError("connection reset")

        with pytest.raises(AppError) as exc_info:
            asyncio.run(handler.handle(event, context))

        assert exc_info.value.severity is ErrorSeverity.CRITICAL
        assert ledger.begin.call_count == 1
        processor.process.assert_not_called()

    def test_completion_failure_still_succeeds(self, handler, ledger, event, context, no_retry_sleep, caplog):
        ledger.complete.side_effect = ConnectionError("connection reset")

        outcome = asyncio.run(handler.handle(event, context))

        assert outcome.result == "success"
        assert ledger.complete.call_count == 2
        assert any(
            r.levelname == "CRITICAL" and "Could not finalize webhook_evt_1" in r.getMessage()
            for r in caplog.records
        )
