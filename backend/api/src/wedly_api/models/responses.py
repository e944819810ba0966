"""Success bodies of the API endpoints (camelCase on the wire)."""

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field


class WebhookAck(BaseModel):
    """Acknowledgement of a webhook delivery."""

    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    event_id: str | None = Field(default=None, alias="eventId", examples=["evt_1"])
    request_id: str = Field(..., alias="requestId")
    timestamp: dt.datetime
    processing_time_ms: int | None = Field(default=None, alias="processingTimeMs")
    message: str | None = Field(default=None, examples=["already processed"])


class CheckoutSessionResponse(BaseModel):
    """Checkout session the browser should redirect to."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", examples=["cs_test_123"])
    url: str = Field(..., description="Hosted checkout page URL")
    request_id: str = Field(..., alias="requestId")
    timestamp: dt.datetime


class HealthResponse(BaseModel):
    """Liveness report."""

    status: str = Field(default="ok", examples=["ok"])
    timestamp: dt.datetime
    service: str
    version: str
    environment: str | None = None
