"""Purchase receipt and buyer entitlement models."""

import datetime as dt
import json
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def to_dynamodb_value(value: Any) -> Any:
    """Make provider JSON storable in DynamoDB (floats become Decimal)."""
    return json.loads(json.dumps(value, default=str), parse_float=Decimal)


class PurchaseRecord(BaseModel):
    """Durable receipt of a completed payment, one per checkout session.

    Amount and currency are written once and never updated; only the
    email annotation fields change after creation.
    """

    stripe_session_id: str = Field(..., description="Checkout session ID (cs_xxx)", examples=["cs_1"])
    payment_intent_id: str | None = Field(default=None, examples=["pi_1"])
    buyer_email: str | None = None
    subject_id: str | None = Field(default=None, description="Buyer subject ID if known")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217, upper-case")
    status: Literal["completed"] = "completed"
    created_at: dt.datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_data: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    email_sent: bool = False
    email_message_id: str | None = None
    email_error: str | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    def to_item(self) -> dict[str, Any]:
        """DynamoDB item for this record."""
        item: dict[str, Any] = {
            "stripe_session_id": self.stripe_session_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "metadata": to_dynamodb_value(self.metadata),
            "provider_data": to_dynamodb_value(self.provider_data),
            "idempotency_key": self.idempotency_key,
            "email_sent": self.email_sent,
        }
        for key in ("payment_intent_id", "buyer_email", "subject_id", "email_message_id", "email_error"):
            value = getattr(self, key)
            if value is not None:
                item[key] = value
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "PurchaseRecord":
        return cls.model_validate(item)


class Entitlement(BaseModel):
    """Buyer account state unlocked by purchases."""

    user_id: str
    email: str | None = None
    premium: bool = False
    total_spent: int = Field(default=0, ge=0, description="Cumulative minor units")
    purchase_history: list[str] = Field(default_factory=list)
    last_purchase_date: dt.datetime | None = None

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Entitlement":
        return cls.model_validate(item)
