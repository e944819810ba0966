"""Per-request correlation record threaded through every pipeline stage."""

import time
from typing import Any

from pydantic import BaseModel, Field

from wedly_shared.utils.sanitize import sanitize_value


class RequestContext(BaseModel):
    """Correlation data for one inbound request.

    Created once per request, mutated by each stage as it learns more
    (authenticated subject, event id, rate-limit headers), discarded after
    the response is sent.
    """

    request_id: str
    method: str = "GET"
    endpoint: str = ""
    caller_ip: str = "unknown"
    user_agent: str | None = None
    subject_id: str | None = None
    subject_email: str | None = None
    event_id: str | None = None
    session_id: str | None = None
    rate_limit_headers: dict[str, str] = Field(default_factory=dict)
    additional_data: dict[str, Any] = Field(default_factory=dict)
    started_at: float = Field(default_factory=time.monotonic)

    def add(self, **fields: Any) -> None:
        """Accumulate diagnostic fields."""
        self.additional_data.update(fields)

    def elapsed_ms(self) -> int:
        """Milliseconds since the request entered the pipeline."""
        return int((time.monotonic() - self.started_at) * 1000)

    def log_fields(self) -> dict[str, Any]:
        """Sanitized logging fields for this request, omitting unset values."""
        fields: dict[str, Any] = {
            "request_id": self.request_id,
            "http_method": self.method,
            "endpoint": self.endpoint,
            "caller_ip": self.caller_ip,
            "user_agent": self.user_agent,
            "subject_id": self.subject_id,
            "subject_email": self.subject_email,
            "event_id": self.event_id,
            "session_id": self.session_id,
        }
        if self.additional_data:
            fields["additional_data"] = dict(self.additional_data)
        return sanitize_value({key: value for key, value in fields.items() if value is not None})
