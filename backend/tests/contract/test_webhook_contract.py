"""Contract tests for POST /webhooks/payment.

Deliveries are signed with the real Stripe HMAC scheme and run through the
whole FastAPI pipeline against moto-backed DynamoDB, SSM and SES. Only the
provider's read API (session and payment intent retrieval) is patched.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from wedly_shared.services.stripe_service import StripeService, StripeServiceError

WEBHOOK_URL = "/webhooks/payment"
STRIPE_UA = "Stripe/1.0 (+https://stripe.com/docs/webhooks)"


@pytest.fixture
def client(tables, stripe_secrets, ses_identity, buyer_account) -> TestClient:
    from wedly_api.main import app

    return TestClient(app)


@pytest.fixture
def provider(checkout_session, payment_intent):
    """Patch the provider's read API on StripeService."""
    with (
        patch.object(StripeService, "retrieve_checkout_session", return_value=checkout_session) as session,
        patch.object(StripeService, "retrieve_payment_intent", return_value=payment_intent) as intent,
    ):
        yield SimpleNamespace(session=session, intent=intent)


def _ledger(tables, event_id: str = "evt_1") -> dict | None:
    return (
        tables.Table("test-wedly-webhook-events")
        .get_item(Key={"idempotency_key": f"webhook_{event_id}"})
        .get("Item")
    )


def _purchase(tables, session_id: str = "cs_1") -> dict | None:
    return tables.Table("test-wedly-purchases").get_item(Key={"stripe_session_id": session_id}).get("Item")


class TestValidDelivery:
    """A signed checkout.session.completed event is applied once."""

    def test_returns_ack_and_records_purchase(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event, user_agent=STRIPE_UA)

        response = client.post(WEBHOOK_URL, content=body, headers={**headers, "X-Request-ID": "req-contract-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["eventId"] == "evt_1"
        assert data["requestId"] == "req-contract-1"
        assert data["message"] == "Webhook processed"
        assert "timestamp" in data
        assert "processingTimeMs" in data
        assert response.headers["X-Request-ID"] == "req-contract-1"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-RateLimit-Limit"] == "20"

        purchase = _purchase(tables)
        assert purchase["stripe_session_id"] == "cs_1"
        assert purchase["amount"] == 4999
        assert purchase["currency"] == "AUD"
        assert purchase["email_sent"] is True
        assert _ledger(tables)["status"] == "success"
        provider.session.assert_called_once_with("cs_1")

    def test_duplicate_delivery_is_already_processed(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event)

        first = client.post(WEBHOOK_URL, content=body, headers=headers)
        second = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["received"] is True
        assert second.json()["message"] == "already processed"
        assert provider.session.call_count == 1

        users = tables.Table("test-wedly-users").get_item(Key={"user_id": "user-a"})["Item"]
        assert users["total_spent"] == 4999
        assert users["purchase_history"] == ["cs_1"]

    def test_unsupported_event_is_acknowledged(self, client, provider, tables, signed_delivery):
        event = {"id": "evt_2", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        body, headers = signed_delivery(event)

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Event type not handled"
        assert _ledger(tables, "evt_2")["status"] == "unsupported_event"
        provider.session.assert_not_called()


class TestRejectedDelivery:
    """Deliveries that fail verification never touch durable state."""

    def test_wrong_secret_is_400(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event, secret="whsec_someone_else")

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "webhook"
        assert data["error"] == "Invalid webhook signature."
        assert data["retryable"] is False
        assert data["requestId"]
        assert _ledger(tables) is None
        assert _purchase(tables) is None
        provider.session.assert_not_called()

    def test_missing_signature_is_400(self, client, provider, tables, checkout_event, signed_delivery):
        body, _ = signed_delivery(checkout_event)

        response = client.post(WEBHOOK_URL, content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing webhook signature."
        assert _ledger(tables) is None

    def test_stale_signature_is_400(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event, timestamp=1_600_000_000)

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Webhook timestamp outside the allowed tolerance."

    def test_tampered_body_is_400(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event)
        tampered = body.replace(b"4999", b"1")

        response = client.post(WEBHOOK_URL, content=tampered, headers=headers)

        assert response.status_code == 400
        assert _purchase(tables) is None

    def test_oversized_body_is_413(self, client, provider, tables):
        response = client.post(
            WEBHOOK_URL,
            content=b"x" * (1024 * 1024 + 1),
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )

        assert response.status_code == 413
        assert response.json()["code"] == "validation"

    def test_oversized_chunked_body_is_413(self, client, provider, tables):
        def chunks():
            for _ in range(5):
                yield b"x" * (256 * 1024)

        response = client.post(WEBHOOK_URL, content=chunks(), headers={"Stripe-Signature": "t=1,v1=abc"})

        assert response.status_code == 413
        assert _ledger(tables) is None

    def test_error_body_never_leaks_internals(self, client, provider, tables, checkout_event, signed_delivery):
        body, headers = signed_delivery(checkout_event, secret="whsec_someone_else")

        text = client.post(WEBHOOK_URL, content=body, headers=headers).text

        assert "whsec_" not in text
        assert "Traceback" not in text


class TestProcessingFailure:
    def test_provider_failure_marks_ledger_error(self, client, provider, tables, checkout_event, signed_delivery):
        provider.session.side_effect = StripeServiceError(
            "Invalid payment request during checkout session retrieval: No such checkout session",
            stripe_error_code="resource_missing",
            error_type="invalid_request",
        )
        body, headers = signed_delivery(checkout_event)

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 502
        data = response.json()
        assert data["code"] == "payment"
        assert data["error"] == "Payment details are temporarily unavailable."
        assert "No such checkout session" not in response.text
        ledger = _ledger(tables)
        assert ledger["status"] == "error"
        assert "No such checkout session" in ledger["error_message"]
        assert _purchase(tables) is None

    def test_missing_secrets_is_500(self, tables, ses_identity, provider, checkout_event, signed_delivery):
        from wedly_api.main import app

        body, headers = signed_delivery(checkout_event)

        response = TestClient(app).post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["code"] == "configuration"

    def test_pipeline_without_verified_event_is_500(self, client, provider, tables, checkout_event, signed_delivery):
        async def skip(call):
            return None

        body, headers = signed_delivery(checkout_event)

        with patch("wedly_api.routes.webhooks.signature_stage", return_value=skip):
            response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["code"] == "internal"
        assert _ledger(tables) is None
        provider.session.assert_not_called()


class TestRateLimit:
    def test_eleventh_failed_delivery_is_throttled(self, client, provider, tables):
        for _ in range(10):
            assert client.post(WEBHOOK_URL, content=b"{}").status_code == 400

        response = client.post(WEBHOOK_URL, content=b"{}")

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "rate_limit"
        assert data["retryable"] is True
        assert data["error"].startswith("Too many requests. Please try again in ")
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0
        assert "X-RateLimit-Reset" in response.headers

    def test_successful_deliveries_do_not_consume_quota(self, client, provider, tables, signed_delivery):
        for i in range(12):
            event = {"id": f"evt_u{i}", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
            body, headers = signed_delivery(event)

            assert client.post(WEBHOOK_URL, content=body, headers=headers).status_code == 200


class TestCors:
    def test_preflight_allows_stripe_only(self, client):
        response = client.options(WEBHOOK_URL, headers={"Origin": "https://api.stripe.com"})

        assert response.status_code == 200
        assert response.headers["Access-Control-Allow-Origin"] == "https://api.stripe.com"
        assert response.headers["Access-Control-Allow-Methods"] == "POST"
        assert "Stripe-Signature" in response.headers["Access-Control-Allow-Headers"]
        assert "Access-Control-Allow-Credentials" not in response.headers

    def test_preflight_from_browser_origin_is_not_allowed(self, client):
        response = client.options(WEBHOOK_URL, headers={"Origin": "http://localhost:3000"})

        assert "Access-Control-Allow-Origin" not in response.headers
