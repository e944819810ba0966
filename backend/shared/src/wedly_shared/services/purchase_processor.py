"""Applies a completed checkout to durable state.

Steps, in order:

1. Re-fetch the checkout session from the provider (authoritative amount,
   currency and metadata), retried.
2. Best-effort fetch of the payment intent for the receipt link.
3. Persist the PurchaseRecord, one per session, retried.
4. Update the buyer's entitlement, found by email, retried.
5. Send the confirmation email and annotate the PurchaseRecord.

Failures in steps 1, 3 and 4 raise a classified AppError; failures in
steps 2 and 5 are logged and never change the outcome.
"""

import asyncio
import datetime as dt
from typing import Any

from pydantic import BaseModel

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import ErrorCategory, ErrorSeverity, create_error
from wedly_shared.models.purchase import PurchaseRecord
from wedly_shared.models.webhook import CheckoutSessionPayload, WebhookEvent, idempotency_key_for
from wedly_shared.services.dynamodb import DocumentStore, get_document_store
from wedly_shared.services.email_service import (
    EmailResult,
    EmailService,
    build_purchase_confirmation,
    get_email_service,
)
from wedly_shared.services.retry import DATABASE_RETRY_CONFIG, with_database_retry
from wedly_shared.services.stripe_service import (
    StripeConfigurationError,
    StripeService,
    get_stripe_service,
)
from wedly_shared.utils.logging import get_logger, log_error, log_payment_operation
from wedly_shared.utils.sanitize import sanitize_message

logger = get_logger(__name__)

PURCHASES_TABLE = "purchases"
USERS_TABLE = "users"


class PurchaseOutcome(BaseModel):
    """What processing one checkout did."""

    session_id: str
    paid: bool = True
    purchase_created: bool = False
    entitlement_updated: bool = False
    email_sent: bool = False
    note: str | None = None


def _id_of(value: Any) -> str | None:
    """ID of an expandable provider field (a bare ID or an expanded object)."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class PurchaseProcessor:
    """Processes verified ``checkout.session.completed`` events."""

    def __init__(
        self,
        gateway: StripeService | None = None,
        store: DocumentStore | None = None,
        email: EmailService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway or get_stripe_service()
        self._store = store or get_document_store()
        self._email = email or get_email_service()
        self._settings = settings or get_settings()

    async def process(self, event: WebhookEvent, context: RequestContext) -> PurchaseOutcome:
        """Run steps 1 to 5 for one checkout completion.

        Args:
            event: Verified event whose payload is a CheckoutSessionPayload
            context: Request context for correlation

        Returns:
            PurchaseOutcome describing what changed

        Raises:
            AppError: PAYMENT when the session cannot be fetched, DATABASE
                when the purchase or entitlement cannot be written
        """
        if not isinstance(event.payload, CheckoutSessionPayload):
            raise create_error(
                f"Event {event.id} has no checkout session payload",
                ErrorCategory.WEBHOOK,
                ErrorSeverity.HIGH,
                400,
                "Invalid webhook payload.",
            )

        payload = event.payload
        context.session_id = payload.id

        session = await self._retrieve_session(payload.id, context)
        if session.get("payment_status") != "paid":
            note = f"Payment status is '{session.get('payment_status')}', not 'paid'"
            logger.warning("Checkout session %s not paid, skipping: %s", payload.id, note)
            return PurchaseOutcome(session_id=payload.id, paid=False, note=note)

        intent = await self._retrieve_payment_intent(_id_of(session.get("payment_intent")), context)
        purchase = self._build_purchase(event, payload, session, intent)

        created = await self._persist_purchase(purchase, context)
        outcome = PurchaseOutcome(session_id=purchase.stripe_session_id, purchase_created=created)
        if not created:
            outcome.note = "Purchase already recorded for this session"
            return outcome

        outcome.entitlement_updated = await self._update_entitlement(purchase, context)
        outcome.email_sent = await self._send_confirmation(purchase, intent, context)
        return outcome

    # === Step 1 ===

    async def _retrieve_session(self, session_id: str, context: RequestContext) -> dict[str, Any]:
        try:
            session = await with_database_retry(
                lambda: asyncio.to_thread(self._gateway.retrieve_checkout_session, session_id),
                context,
            )
        except StripeConfigurationError as e:
            raise create_error(
                e.message,
                ErrorCategory.CONFIGURATION,
                ErrorSeverity.CRITICAL,
                500,
                "Service configuration error. Please try again later.",
            ) from e
        except Exception as e:
            transient = DATABASE_RETRY_CONFIG.is_retryable(e)
            raise create_error(
                f"Failed to retrieve checkout session {session_id}: {e}",
                ErrorCategory.PAYMENT,
                ErrorSeverity.HIGH,
                503 if transient else 502,
                "Payment details are temporarily unavailable.",
                context={"session_id": session_id},
                retryable=transient,
            ) from e

        if session.get("amount_total") is None or not session.get("currency"):
            raise create_error(
                f"Checkout session {session_id} has no amount or currency",
                ErrorCategory.PAYMENT,
                ErrorSeverity.HIGH,
                502,
                "Payment details are incomplete.",
                context={"session_id": session_id},
            )

        log_payment_operation(
            logger,
            "retrieve_checkout_session",
            session_id=session_id,
            amount_minor_units=session.get("amount_total"),
            currency=session.get("currency"),
            status=session.get("payment_status"),
        )
        return session

    # === Step 2 ===

    async def _retrieve_payment_intent(
        self, payment_intent_id: str | None, context: RequestContext
    ) -> dict[str, Any] | None:
        if not payment_intent_id:
            return None
        try:
            return await asyncio.to_thread(self._gateway.retrieve_payment_intent, payment_intent_id)
        except Exception as e:
            logger.warning(
                "Payment intent %s enrichment failed, continuing: %s",
                payment_intent_id,
                e,
                extra=context.log_fields(),
            )
            return None

    # === Step 3 ===

    def _build_purchase(
        self,
        event: WebhookEvent,
        payload: CheckoutSessionPayload,
        session: dict[str, Any],
        intent: dict[str, Any] | None,
    ) -> PurchaseRecord:
        session_metadata: dict[str, Any] = dict(session.get("metadata") or {})
        customer_details: dict[str, Any] = session.get("customer_details") or {}
        method_types: list[str] = session.get("payment_method_types") or []

        metadata: dict[str, Any] = {
            **session_metadata,
            "product_name": session_metadata.get("productName") or self._settings.product_name,
            "product_description": self._settings.product_description,
        }
        if method_types:
            metadata["payment_method"] = method_types[0]

        provider_data: dict[str, Any] = {
            "session_url": session.get("url"),
            "payment_status": session.get("payment_status"),
            "customer_details": customer_details,
            "line_items": (session.get("line_items") or {}).get("data", []),
            "livemode": event.livemode,
        }
        if intent:
            charge = intent.get("latest_charge")
            provider_data["payment_intent"] = {
                "id": intent.get("id"),
                "status": intent.get("status"),
                "receipt_url": charge.get("receipt_url") if isinstance(charge, dict) else None,
            }

        return PurchaseRecord(
            stripe_session_id=session.get("id") or payload.id,
            payment_intent_id=_id_of(session.get("payment_intent")) or payload.payment_intent,
            buyer_email=(
                session.get("customer_email")
                or customer_details.get("email")
                or session_metadata.get("userEmail")
                or payload.buyer_email
            ),
            subject_id=session.get("client_reference_id") or session_metadata.get("userId"),
            amount=session["amount_total"],
            currency=session["currency"],
            created_at=dt.datetime.now(dt.UTC),
            metadata=metadata,
            provider_data=provider_data,
            idempotency_key=idempotency_key_for(event.id),
        )

    async def _persist_purchase(self, purchase: PurchaseRecord, context: RequestContext) -> bool:
        """Write the purchase once per session; False if another event already did."""

        def write() -> bool:
            if self._store.put_item(
                PURCHASES_TABLE,
                purchase.to_item(),
                condition_expression="attribute_not_exists(stripe_session_id)",
            ):
                return True
            # A retried write may find its own first attempt
            existing = self._store.get_item(
                PURCHASES_TABLE, {"stripe_session_id": purchase.stripe_session_id}
            )
            return bool(existing) and existing.get("idempotency_key") == purchase.idempotency_key

        try:
            created = await with_database_retry(lambda: asyncio.to_thread(write), context)
        except Exception as e:
            raise create_error(
                f"Failed to persist purchase for session {purchase.stripe_session_id}: {e}",
                ErrorCategory.DATABASE,
                ErrorSeverity.CRITICAL,
                503,
                "Service temporarily unavailable. Please try again in a moment.",
                context={"session_id": purchase.stripe_session_id},
                retryable=True,
            ) from e

        if created:
            log_payment_operation(
                logger,
                "persist_purchase",
                session_id=purchase.stripe_session_id,
                payment_intent_id=purchase.payment_intent_id,
                amount_minor_units=purchase.amount,
                currency=purchase.currency,
                status=purchase.status,
            )
        else:
            logger.warning(
                "Purchase for session %s already recorded by another event; skipping side effects",
                purchase.stripe_session_id,
            )
        return created

    # === Step 4 ===

    async def _update_entitlement(self, purchase: PurchaseRecord, context: RequestContext) -> bool:
        if not purchase.buyer_email:
            logger.warning(
                "Purchase %s has no buyer email; entitlement not updated", purchase.stripe_session_id
            )
            return False

        email = purchase.buyer_email

        def apply() -> bool | None:
            user = self._store.get_user_by_email(email)
            if user is None:
                return None
            attrs = self._store.update_item(
                USERS_TABLE,
                {"user_id": user["user_id"]},
                "SET premium = :true, last_purchase_date = :now, "
                "purchase_history = list_append(if_not_exists(purchase_history, :empty), :purchase) "
                "ADD total_spent :amount",
                {
                    ":true": True,
                    ":now": dt.datetime.now(dt.UTC).isoformat(),
                    ":empty": [],
                    ":purchase": [purchase.stripe_session_id],
                    ":purchase_id": purchase.stripe_session_id,
                    ":amount": purchase.amount,
                },
                condition_expression="NOT contains(purchase_history, :purchase_id)",
            )
            return attrs is not None

        try:
            applied = await with_database_retry(lambda: asyncio.to_thread(apply), context)
        except Exception as e:
            raise create_error(
                f"Failed to update entitlement for purchase {purchase.stripe_session_id}: {e}",
                ErrorCategory.DATABASE,
                ErrorSeverity.HIGH,
                503,
                "Service temporarily unavailable. Please try again in a moment.",
                context={"session_id": purchase.stripe_session_id},
                retryable=True,
            ) from e

        if applied is None:
            logger.warning(
                "No account found for buyer of %s; payment recorded without entitlement",
                purchase.stripe_session_id,
                extra=context.log_fields(),
            )
            return False
        if not applied:
            logger.info("Entitlement for %s was already applied", purchase.stripe_session_id)
            return True

        log_payment_operation(
            logger,
            "update_entitlement",
            session_id=purchase.stripe_session_id,
            amount_minor_units=purchase.amount,
            currency=purchase.currency,
        )
        return True

    # === Step 5 ===

    async def _send_confirmation(
        self,
        purchase: PurchaseRecord,
        intent: dict[str, Any] | None,
        context: RequestContext,
    ) -> bool:
        receipt_url = None
        if intent and isinstance(intent.get("latest_charge"), dict):
            receipt_url = intent["latest_charge"].get("receipt_url")

        try:
            message = build_purchase_confirmation(
                purchase,
                product_name=purchase.metadata.get("product_name", self._settings.product_name),
                receipt_url=receipt_url,
            )
            result = await asyncio.to_thread(self._email.send, message)
        except Exception as e:
            result = EmailResult(success=False, error=sanitize_message(f"Email not sent: {e}"))

        if result.success:
            log_payment_operation(
                logger, "send_confirmation_email", session_id=purchase.stripe_session_id, status="sent"
            )
        else:
            log_error(
                logger,
                create_error(
                    f"Confirmation email failed for {purchase.stripe_session_id}: {result.error}",
                    ErrorCategory.EMAIL,
                    ErrorSeverity.LOW,
                    500,
                    "Email service temporarily unavailable. Your request was processed successfully.",
                    retryable=True,
                ),
                context,
            )

        await self._annotate_email(purchase, result, context)
        return result.success

    async def _annotate_email(
        self, purchase: PurchaseRecord, result: EmailResult, context: RequestContext
    ) -> None:
        if result.success:
            expression = "SET email_sent = :sent, email_message_id = :message_id, email_attempted_at = :now"
            values: dict[str, Any] = {":sent": True, ":message_id": result.message_id or ""}
        else:
            expression = "SET email_sent = :sent, email_error = :error, email_attempted_at = :now"
            values = {":sent": False, ":error": sanitize_message(result.error) or "Email not sent"}
        values[":now"] = dt.datetime.now(dt.UTC).isoformat()

        try:
            await with_database_retry(
                lambda: asyncio.to_thread(
                    self._store.update_item,
                    PURCHASES_TABLE,
                    {"stripe_session_id": purchase.stripe_session_id},
                    expression,
                    values,
                ),
                context,
            )
        except Exception as e:
            logger.error(
                "Failed to record email outcome for %s: %s",
                purchase.stripe_session_id,
                e,
                extra=context.log_fields(),
            )
