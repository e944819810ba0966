"""Stripe payment gateway for checkout sessions and webhook events.

Provides integration with Stripe using the v8+ StripeClient pattern.
Retrieves API keys from SSM Parameter Store. Every Stripe failure is
re-raised as a ``StripeServiceError`` whose message, code and type are
normalized for classification and retry decisions.
"""

import datetime as dt
import hashlib
import json
import logging
from functools import lru_cache
from typing import Any

import stripe
from stripe import StripeClient

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.errors import CollaboratorError
from wedly_shared.services.ssm_service import SSMService, SSMServiceError, get_ssm_service

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_EXPAND = ["line_items", "payment_intent"]
PAYMENT_INTENT_EXPAND = ["latest_charge"]


class StripeServiceError(CollaboratorError):
    """Raised when a Stripe operation fails."""

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Initialize with message and optional Stripe error code.

        Args:
            message: Normalized, human-readable error message.
            stripe_error_code: Stripe-specific error code if available.
            error_type: Normalized error type (card_error, rate_limit, network, ...).
        """
        super().__init__(message, code=stripe_error_code, error_type=error_type or "stripe_error")
        self.stripe_error_code = stripe_error_code


class StripeConfigurationError(StripeServiceError):
    """Raised when Stripe credentials cannot be loaded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stripe_error_code="configuration", error_type="configuration")


class WebhookSignatureError(StripeServiceError):
    """Raised when a webhook payload fails verification.

    ``reason`` is one of ``missing``, ``mismatch``, ``timestamp``,
    ``malformed`` or ``payload``.
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message, stripe_error_code="signature_verification", error_type="webhook")
        self.reason = reason


def translate_stripe_error(error: stripe.StripeError, operation: str) -> StripeServiceError:
    """Normalize a Stripe SDK exception.

    Args:
        error: Exception raised by the SDK
        operation: Short description of the failed call

    Returns:
        StripeServiceError with a message safe to classify and retry on
    """
    code = getattr(error, "code", None)
    if isinstance(error, stripe.CardError):
        return StripeServiceError(
            f"Payment error: card declined during {operation}: {error.user_message or ''}",
            stripe_error_code=code or "card_declined",
            error_type="card_error",
        )
    if isinstance(error, stripe.RateLimitError):
        return StripeServiceError(
            f"Too many requests to payment provider during {operation}: rate limit exceeded",
            stripe_error_code="rate_limit",
            error_type="rate_limit",
        )
    if isinstance(error, stripe.InvalidRequestError):
        return StripeServiceError(
            f"Invalid payment request during {operation}: {error.user_message or ''}",
            stripe_error_code=code or "invalid_request",
            error_type="invalid_request",
        )
    if isinstance(error, stripe.AuthenticationError):
        return StripeServiceError(
            f"Payment service configuration error during {operation}",
            stripe_error_code="configuration",
            error_type="configuration",
        )
    if isinstance(error, stripe.APIConnectionError):
        return StripeServiceError(
            f"Network error communicating with payment provider during {operation}",
            stripe_error_code="network",
            error_type="network",
        )
    if isinstance(error, stripe.APIError):
        return StripeServiceError(
            f"Payment service temporarily unavailable during {operation}",
            stripe_error_code=code or "unavailable",
            error_type="api_error",
        )
    return StripeServiceError(
        f"Payment provider error during {operation}",
        stripe_error_code=code,
        error_type="stripe_error",
    )


def _as_dict(obj: Any) -> dict[str, Any]:
    """Convert a Stripe object (or plain mapping) to a JSON-compatible dict."""
    if isinstance(obj, stripe.StripeObject):
        result: dict[str, Any] = json.loads(str(obj))
        return result
    return dict(obj)


class StripeService:
    """Service for Stripe payment operations.

    Handles:
    - Webhook signature verification
    - Checkout session creation and retrieval
    - Payment intent retrieval

    Usage:
        stripe_svc = get_stripe_service()
        session = stripe_svc.retrieve_checkout_session("cs_test_123")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        ssm: SSMService | None = None,
    ) -> None:
        """Initialize Stripe service with credentials from SSM.

        Args:
            settings: Runtime settings. Defaults to the process-wide settings.
            ssm: Parameter Store reader. Defaults to the shared instance.
        """
        self._settings = settings or get_settings()
        self._ssm = ssm or get_ssm_service()
        self._client: StripeClient | None = None
        self._webhook_secret: str | None = None

    def _get_client(self) -> StripeClient:
        """Get or create the Stripe client (lazy initialization).

        Raises:
            StripeConfigurationError: If credentials cannot be retrieved.
        """
        if self._client is None:
            try:
                secret_key = self._ssm.get_parameter(self._settings.stripe_parameter("secret_key"))
            except SSMServiceError as e:
                raise StripeConfigurationError(
                    f"Stripe secret key unavailable: {e.message}"
                ) from e
            self._client = StripeClient(secret_key)
            logger.info("Stripe client initialized for environment: %s", self._settings.environment)
        return self._client

    def _get_webhook_secret(self) -> str:
        """Get the webhook signing secret.

        Raises:
            StripeConfigurationError: If secret cannot be retrieved.
        """
        if self._webhook_secret is None:
            try:
                self._webhook_secret = self._ssm.get_parameter(
                    self._settings.stripe_parameter("webhook_secret")
                )
            except SSMServiceError as e:
                raise StripeConfigurationError(
                    f"Stripe webhook secret unavailable: {e.message}"
                ) from e
        return self._webhook_secret

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook signature against the raw body and parse the event.

        Args:
            payload: Raw request body bytes, exactly as received.
            signature: Stripe-Signature header value.

        Returns:
            Parsed event dictionary.

        Raises:
            WebhookSignatureError: If the header is absent, malformed, stale
                or does not match the body.
            StripeConfigurationError: If the signing secret is unavailable.
        """
        if not signature:
            raise WebhookSignatureError("Missing webhook signature header", reason="missing")

        webhook_secret = self._get_webhook_secret()

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                webhook_secret,
                tolerance=self._settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            detail = str(e).lower()
            if "timestamp outside the tolerance" in detail:
                raise WebhookSignatureError("Webhook timestamp too old", reason="timestamp") from e
            if "unable to extract" in detail:
                raise WebhookSignatureError("Malformed webhook signature", reason="malformed") from e
            raise WebhookSignatureError("Invalid webhook signature", reason="mismatch") from e
        except ValueError as e:
            raise WebhookSignatureError("Malformed webhook payload", reason="payload") from e

        # Parse the verified bytes directly; never a re-serialized body
        event: dict[str, Any] = json.loads(payload)
        logger.info("Webhook signature verified for event: %s", event.get("id"))
        return event

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        """Fetch the authoritative checkout session.

        Args:
            session_id: Checkout session ID (cs_xxx).

        Returns:
            Session dict with ``line_items`` and ``payment_intent`` expanded.

        Raises:
            StripeServiceError: If retrieval fails.
        """
        client = self._get_client()
        try:
            session = client.checkout.sessions.retrieve(
                session_id, params={"expand": CHECKOUT_SESSION_EXPAND}
            )
        except stripe.StripeError as e:
            logger.error(
                "Stripe checkout session retrieval failed: %s (code: %s)",
                session_id,
                getattr(e, "code", None),
            )
            raise translate_stripe_error(e, "checkout session retrieval") from e
        return _as_dict(session)

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """Fetch a payment intent with its latest charge.

        Args:
            payment_intent_id: PaymentIntent ID (pi_xxx).

        Returns:
            PaymentIntent dict.

        Raises:
            StripeServiceError: If retrieval fails.
        """
        client = self._get_client()
        try:
            intent = client.payment_intents.retrieve(
                payment_intent_id, params={"expand": PAYMENT_INTENT_EXPAND}
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e, "payment intent retrieval") from e
        return _as_dict(intent)

    def create_checkout_session(
        self,
        *,
        subject_id: str,
        customer_email: str,
        request_id: str,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        """Create a one-time payment Checkout session for the configured product.

        Args:
            subject_id: Authenticated buyer's subject ID.
            customer_email: Buyer email for the Stripe receipt.
            request_id: Correlation ID; with the subject forms the idempotency key.
            success_url: Redirect on success (supports {CHECKOUT_SESSION_ID}).
            cancel_url: Redirect on cancel.

        Returns:
            Dict with ``session_id``, ``url`` and ``expires_at``.

        Raises:
            StripeServiceError: If session creation fails.
        """
        client = self._get_client()
        settings = self._settings
        base_url = settings.app_base_url.rstrip("/")
        expires_at = dt.datetime.now(dt.UTC) + dt.timedelta(hours=settings.checkout_session_ttl_hours)

        try:
            logger.info(
                "Creating Stripe checkout session for subject %s, amount %d %s",
                subject_id,
                settings.product_price_minor_units,
                settings.product_currency,
            )
            session = client.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "payment_method_types": ["card"],
                    "line_items": [
                        {
                            "price_data": {
                                "currency": settings.product_currency,
                                "unit_amount": settings.product_price_minor_units,
                                "product_data": {
                                    "name": settings.product_name,
                                    "description": settings.product_description,
                                },
                            },
                            "quantity": 1,
                        }
                    ],
                    "success_url": success_url
                    or f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": cancel_url or f"{base_url}/dashboard?canceled=true",
                    "customer_email": customer_email,
                    "client_reference_id": subject_id,
                    "metadata": {
                        "userId": subject_id,
                        "userEmail": customer_email,
                        "productName": settings.product_name,
                        "requestId": request_id,
                    },
                    "expires_at": int(expires_at.timestamp()),
                },
                options={"idempotency_key": f"checkout_{subject_id}_{request_id}"},
            )
        except stripe.StripeError as e:
            logger.error(
                "Stripe checkout session creation failed (code: %s)",
                getattr(e, "code", None),
            )
            raise translate_stripe_error(e, "checkout session creation") from e

        logger.info("Checkout session created: %s for subject %s", session.id, subject_id)
        return {
            "session_id": session.id,
            "url": session.url,
            "expires_at": session.expires_at,
        }

    @staticmethod
    def compute_payload_hash(payload: bytes) -> str:
        """Compute SHA-256 hash of a webhook payload for the audit trail."""
        return hashlib.sha256(payload).hexdigest()


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """Get the shared StripeService instance (singleton pattern).

    Returns:
        StripeService: Shared service instance.
    """
    return StripeService()
