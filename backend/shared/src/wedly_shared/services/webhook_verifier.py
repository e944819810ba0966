"""Signature verification of inbound payment-provider events."""

from typing import Any

from pydantic import ValidationError

from wedly_shared.models.errors import AppError, ErrorCategory, ErrorSeverity, create_error
from wedly_shared.models.webhook import WebhookEvent
from wedly_shared.services.stripe_service import (
    StripeConfigurationError,
    StripeService,
    WebhookSignatureError,
    get_stripe_service,
)
from wedly_shared.utils.logging import get_logger

logger = get_logger(__name__)

_USER_MESSAGES = {
    "missing": "Missing webhook signature.",
    "mismatch": "Invalid webhook signature.",
    "timestamp": "Webhook timestamp outside the allowed tolerance.",
    "malformed": "Invalid webhook signature.",
    "payload": "Invalid webhook payload.",
}


def _webhook_error(message: str, user_message: str, **context: Any) -> AppError:
    return create_error(
        message,
        ErrorCategory.WEBHOOK,
        ErrorSeverity.HIGH,
        400,
        user_message,
        context=context,
        retryable=False,
    )


class WebhookVerifier:
    """Turns a raw signed body into a typed ``WebhookEvent``.

    Verification runs on the bytes exactly as received; the body is parsed
    only after its signature checks out.
    """

    def __init__(self, gateway: StripeService | None = None) -> None:
        self._gateway = gateway or get_stripe_service()

    def verify(self, raw_body: bytes, signature: str | None) -> WebhookEvent:
        """Verify and parse one delivery.

        Args:
            raw_body: Unparsed request body
            signature: ``Stripe-Signature`` header value

        Returns:
            The verified event

        Raises:
            AppError: WEBHOOK/HIGH/400 when the signature is absent, wrong or
                stale, or the payload is not an event; CONFIGURATION/CRITICAL/500
                when the signing secret is unavailable
        """
        try:
            event = self._gateway.verify_webhook_signature(raw_body, signature)
        except WebhookSignatureError as e:
            logger.warning("Webhook signature rejected (%s): %s", e.reason, e.message)
            raise _webhook_error(e.message, _USER_MESSAGES[e.reason], reason=e.reason) from e
        except StripeConfigurationError as e:
            raise create_error(
                e.message,
                ErrorCategory.CONFIGURATION,
                ErrorSeverity.CRITICAL,
                500,
                "Service configuration error. Please try again later.",
            ) from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise _webhook_error(
                "Verified webhook payload is not an event", _USER_MESSAGES["payload"], reason="payload"
            )

        try:
            return WebhookEvent.from_provider(event)
        except (ValidationError, TypeError, ValueError) as e:
            raise _webhook_error(
                f"Webhook event {event.get('id')} has an invalid payload: {e}",
                _USER_MESSAGES["payload"],
                reason="payload",
                event_type=event.get("type"),
            ) from e
