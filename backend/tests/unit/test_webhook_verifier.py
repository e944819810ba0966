"""Unit tests for webhook signature verification and event typing."""

from unittest.mock import MagicMock

import pytest

from wedly_shared.models.errors import AppError, ErrorCategory, ErrorSeverity
from wedly_shared.models.webhook import CheckoutSessionPayload, WebhookEventKind
from wedly_shared.services.stripe_service import StripeConfigurationError, WebhookSignatureError
from wedly_shared.services.webhook_verifier import WebhookVerifier


@pytest.fixture
def gateway() -> MagicMock:
    return MagicMock()


@pytest.fixture
def verifier(gateway: MagicMock) -> WebhookVerifier:
    return WebhookVerifier(gateway)


class TestVerify:
    def test_checkout_event_gets_typed_payload(self, verifier: WebhookVerifier, gateway: MagicMock, checkout_event):
        gateway.verify_webhook_signature.return_value = checkout_event

        event = verifier.verify(b"{}", "t=1,v1=abc")

        assert event.id == "evt_1"
        assert event.kind is WebhookEventKind.CHECKOUT_SESSION_COMPLETED
        assert isinstance(event.payload, CheckoutSessionPayload)
        assert event.payload.id == "cs_1"
        assert event.payload.amount_total == 4999
        assert event.created_at.year == 2025
        gateway.verify_webhook_signature.assert_called_once_with(b"{}", "t=1,v1=abc")

    def test_other_event_is_unsupported(self, verifier: WebhookVerifier, gateway: MagicMock):
        gateway.verify_webhook_signature.return_value = {
            "id": "evt_2",
            "type": "payment_intent.created",
            "data": {"object": {"id": "pi_2"}},
        }

        event = verifier.verify(b"{}", "t=1,v1=abc")

        assert event.kind is WebhookEventKind.UNSUPPORTED
        assert event.payload == {"id": "pi_2"}

    @pytest.mark.parametrize(
        ("reason", "user_message"),
        [
            ("missing", "Missing webhook signature."),
            ("mismatch", "Invalid webhook signature."),
            ("timestamp", "Webhook timestamp outside the allowed tolerance."),
            ("malformed", "Invalid webhook signature."),
        ],
    )
    def test_signature_failures_are_webhook_errors(
        self, verifier: WebhookVerifier, gateway: MagicMock, reason: str, user_message: str
    ):
        gateway.verify_webhook_signature.side_effect = WebhookSignatureError("rejected", reason=reason)

        with pytest.raises(AppError) as exc_info:
            verifier.verify(b"{}", "t=1,v1=abc")

        error = exc_info.value
        assert error.category is ErrorCategory.WEBHOOK
        assert error.severity is ErrorSeverity.HIGH
        assert error.http_status == 400
        assert error.retryable is False
        assert error.user_message == user_message
        assert error.context["reason"] == reason

    def test_missing_secret_is_configuration_error(self, verifier: WebhookVerifier, gateway: MagicMock):
        gateway.verify_webhook_signature.side_effect = StripeConfigurationError("secret unavailable")

        with pytest.raises(AppError) as exc_info:
            verifier.verify(b"{}", "t=1,v1=abc")

        assert exc_info.value.category is ErrorCategory.CONFIGURATION
        assert exc_info.value.http_status == 500

    @pytest.mark.parametrize("payload", [[], {"type": "checkout.session.completed"}, {"id": "evt_3"}])
    def test_verified_non_event_is_rejected(self, verifier: WebhookVerifier, gateway: MagicMock, payload):
        gateway.verify_webhook_signature.return_value = payload

        with pytest.raises(AppError) as exc_info:
            verifier.verify(b"{}", "t=1,v1=abc")

        assert exc_info.value.http_status == 400
        assert exc_info.value.context["reason"] == "payload"

    def test_checkout_without_session_id_is_rejected(self, verifier: WebhookVerifier, gateway: MagicMock):
        gateway.verify_webhook_signature.return_value = {
            "id": "evt_4",
            "type": "checkout.session.completed",
            "data": {"object": {"amount_total": 100}},
        }

        with pytest.raises(AppError) as exc_info:
            verifier.verify(b"{}", "t=1,v1=abc")

        assert exc_info.value.category is ErrorCategory.WEBHOOK
        assert exc_info.value.context["reason"] == "payload"
