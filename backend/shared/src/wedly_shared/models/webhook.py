"""Verified payment-provider events and the idempotency ledger record."""

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

IDEMPOTENCY_KEY_PREFIX = "webhook_"


def idempotency_key_for(event_id: str) -> str:
    """Ledger key of a provider event (``webhook_<eventId>``)."""
    return f"{IDEMPOTENCY_KEY_PREFIX}{event_id}"


class WebhookEventKind(str, Enum):
    """Event kinds the pipeline distinguishes."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_type(cls, event_type: str) -> "WebhookEventKind":
        if event_type == cls.CHECKOUT_SESSION_COMPLETED.value:
            return cls.CHECKOUT_SESSION_COMPLETED
        return cls.UNSUPPORTED


class CheckoutSessionPayload(BaseModel):
    """The ``data.object`` of a ``checkout.session.completed`` event.

    Financial fields here are informational only; the processor re-fetches
    the session from the provider before persisting anything.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Checkout session ID (cs_xxx)", examples=["cs_1"])
    payment_intent: str | None = Field(default=None, description="PaymentIntent ID (pi_xxx)")
    customer_email: str | None = None
    client_reference_id: str | None = Field(
        default=None, description="Subject ID of the buyer that opened the session"
    )
    amount_total: int | None = Field(default=None, ge=0)
    currency: str | None = None
    payment_status: str | None = Field(default=None, examples=["paid", "unpaid"])
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def buyer_email(self) -> str | None:
        return self.customer_email or self.metadata.get("userEmail")


class WebhookEvent(BaseModel):
    """A provider event accepted only after its signature verified."""

    id: str = Field(..., description="Provider event ID (evt_xxx)", examples=["evt_1"])
    type: str = Field(..., description="Provider event type", examples=["checkout.session.completed"])
    kind: WebhookEventKind
    created_at: dt.datetime
    livemode: bool = False
    payload: CheckoutSessionPayload | dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, event: dict[str, Any]) -> "WebhookEvent":
        """Build a typed event from the provider's parsed JSON.

        Args:
            event: Event dict as returned by signature verification

        Returns:
            WebhookEvent with a typed payload for supported kinds
        """
        event_type = str(event.get("type", ""))
        kind = WebhookEventKind.from_type(event_type)
        data_object = (event.get("data") or {}).get("object") or {}
        created = event.get("created")
        created_at = (
            dt.datetime.fromtimestamp(int(created), tz=dt.UTC)
            if created is not None
            else dt.datetime.now(dt.UTC)
        )

        payload: CheckoutSessionPayload | dict[str, Any]
        if kind is WebhookEventKind.CHECKOUT_SESSION_COMPLETED:
            payload = CheckoutSessionPayload.model_validate(data_object)
        else:
            payload = dict(data_object)

        return cls(
            id=str(event["id"]),
            type=event_type,
            kind=kind,
            created_at=created_at,
            livemode=bool(event.get("livemode", False)),
            payload=payload,
        )


class IdempotencyStatus(str, Enum):
    """Ledger states: ``processing`` until finalized exactly once."""

    PROCESSING = "processing"
    SUCCESS = "success"
    UNSUPPORTED_EVENT = "unsupported_event"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self is not IdempotencyStatus.PROCESSING


class IdempotencyRecord(BaseModel):
    """Ledger entry of one provider event; never deleted."""

    idempotency_key: str = Field(..., examples=["webhook_evt_1"])
    event_id: str
    event_type: str
    status: IdempotencyStatus
    started_at: dt.datetime
    completed_at: dt.datetime | None = None
    error_message: str | None = None
    payload_hash: str | None = Field(default=None, description="SHA-256 of the raw body")
    livemode: bool = False

    def to_item(self) -> dict[str, Any]:
        """DynamoDB item for this record."""
        item: dict[str, Any] = {
            "idempotency_key": self.idempotency_key,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "livemode": self.livemode,
        }
        if self.completed_at:
            item["completed_at"] = self.completed_at.isoformat()
        if self.error_message:
            item["error_message"] = self.error_message
        if self.payload_hash:
            item["payload_hash"] = self.payload_hash
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "IdempotencyRecord":
        return cls.model_validate(item)

    def age(self, now: dt.datetime | None = None) -> dt.timedelta:
        return (now or dt.datetime.now(dt.UTC)) - self.started_at
