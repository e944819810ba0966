"""Pytest configuration and fixtures for the Wedly payment backend tests.

This module provides reusable fixtures for testing:
- AWS mocking with moto (DynamoDB tables, SSM secrets, SES identity)
- Singleton resets so every test builds services inside its own mock
- Sample provider payloads and real Stripe-style webhook signatures
"""

import asyncio
import hashlib
import hmac
import json
import os
import time
from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["ENVIRONMENT"] = "dev"
os.environ["DYNAMODB_TABLE_PREFIX"] = "test-wedly"
os.environ["EMAIL_FROM"] = "noreply@wedly.app"
os.environ.pop("RATE_LIMIT_BACKEND", None)

TABLE_PREFIX = "test-wedly"
TEST_SECRET_KEY = "sk_test_secret_key_for_testing"
TEST_WEBHOOK_SECRET = "whsec_test_secret_for_testing"
STRIPE_USER_AGENT = "Stripe/1.0 (+https://stripe.com/docs/webhooks)"


# === Singleton resets ===


def _reset_singletons() -> None:
    from wedly_api.dependencies import reset_services

    reset_services()


@pytest.fixture(autouse=True)
def reset_service_singletons() -> Generator[None, None, None]:
    """Reset cached settings and services before and after each test.

    This ensures tests using mock_aws get fresh boto3 clients inside the
    mock context rather than reusing a singleton from a previous test.
    """
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
def no_retry_sleep() -> Generator[Any, None, None]:
    """Make retry backoff instant; yields the mock to inspect delays."""
    real_sleep = asyncio.sleep

    with patch("wedly_shared.services.retry.asyncio.sleep") as mock_sleep:

        async def _instant(delay: float) -> None:
            await real_sleep(0)

        mock_sleep.side_effect = _instant
        yield mock_sleep


# === AWS Fixtures ===


@pytest.fixture
def aws() -> Generator[None, None, None]:
    """Run the test inside a moto mock of every AWS service."""
    with mock_aws():
        yield


def _create_tables(client: Any) -> None:
    client.create_table(
        TableName=f"{TABLE_PREFIX}-webhook-events",
        KeySchema=[{"AttributeName": "idempotency_key", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "idempotency_key", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
            {"AttributeName": "started_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "status-index",
                "KeySchema": [
                    {"AttributeName": "status", "KeyType": "HASH"},
                    {"AttributeName": "started_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.create_table(
        TableName=f"{TABLE_PREFIX}-purchases",
        KeySchema=[{"AttributeName": "stripe_session_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "stripe_session_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )
    client.create_table(
        TableName=f"{TABLE_PREFIX}-users",
        KeySchema=[{"AttributeName": "user_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "user_id", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.create_table(
        TableName=f"{TABLE_PREFIX}-rate-limits",
        KeySchema=[{"AttributeName": "rate_key", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "rate_key", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )
    client.update_time_to_live(
        TableName=f"{TABLE_PREFIX}-rate-limits",
        TimeToLiveSpecification={"AttributeName": "expires_at", "Enabled": True},
    )


@pytest.fixture
def tables(aws: None) -> Any:
    """Create every DynamoDB table; returns the boto3 resource."""
    _create_tables(boto3.client("dynamodb"))
    return boto3.resource("dynamodb")


@pytest.fixture
def stripe_secrets(aws: None) -> None:
    """Store the Stripe secrets in SSM Parameter Store."""
    ssm = boto3.client("ssm")
    ssm.put_parameter(
        Name="/wedly/dev/stripe/secret_key", Value=TEST_SECRET_KEY, Type="SecureString"
    )
    ssm.put_parameter(
        Name="/wedly/dev/stripe/webhook_secret", Value=TEST_WEBHOOK_SECRET, Type="SecureString"
    )


@pytest.fixture
def ses_identity(aws: None) -> None:
    """Verify the sender identity so SES accepts sends."""
    boto3.client("ses").verify_email_identity(EmailAddress="noreply@wedly.app")


@pytest.fixture
def buyer_account(tables: Any) -> dict[str, Any]:
    """An existing buyer account for a@example.com."""
    item = {
        "user_id": "user-a",
        "email": "a@example.com",
        "premium": False,
        "total_spent": 0,
    }
    tables.Table(f"{TABLE_PREFIX}-users").put_item(Item=item)
    return item


# === Provider payloads ===


def sign_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Create a Stripe-Signature header (``t=...,v1=...``) for the payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def checkout_event() -> dict[str, Any]:
    """The canonical checkout.session.completed event for cs_1."""
    return {
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "created": 1760000000,
        "livemode": False,
        "data": {
            "object": {
                "id": "cs_1",
                "object": "checkout.session",
                "payment_intent": "pi_1",
                "customer_email": "a@example.com",
                "amount_total": 4999,
                "currency": "aud",
                "payment_status": "paid",
            }
        },
    }


@pytest.fixture
def checkout_session() -> dict[str, Any]:
    """Authoritative session as returned by the provider for cs_1."""
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "url": None,
        "payment_intent": "pi_1",
        "customer_email": "a@example.com",
        "customer_details": {"email": "a@example.com", "name": "Alex Example"},
        "client_reference_id": "user-a",
        "amount_total": 4999,
        "currency": "aud",
        "payment_status": "paid",
        "payment_method_types": ["card"],
        "metadata": {"userId": "user-a", "productName": "Wedly Service"},
        "line_items": {"object": "list", "data": [{"id": "li_1", "amount_total": 4999}]},
    }


@pytest.fixture
def payment_intent() -> dict[str, Any]:
    return {
        "id": "pi_1",
        "object": "payment_intent",
        "status": "succeeded",
        "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/ch_1"},
    }


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode()


@pytest.fixture
def signed_delivery() -> Any:
    """Build ``(body, headers)`` of a signed webhook delivery for an event dict."""

    def _build(
        event: dict[str, Any],
        *,
        secret: str = TEST_WEBHOOK_SECRET,
        timestamp: int | None = None,
        user_agent: str | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        body = encode_event(event)
        headers = {
            "Content-Type": "application/json",
            "Stripe-Signature": sign_payload(body, secret, timestamp),
        }
        if user_agent:
            headers["User-Agent"] = user_agent
        return body, headers

    return _build
