"""Rate-limit configuration, counters and outcomes."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

MINUTE_MS = 60 * 1000


class EndpointClass(str, Enum):
    """Endpoint classes with their own window and ceiling."""

    PAYMENT = "payment"
    WEBHOOK = "webhook"
    GENERAL = "general"
    ADMIN = "admin"
    ASSISTANT = "assistant"
    AUTH = "auth"
    SUSPICIOUS = "suspicious"


class KeyStrategy(str, Enum):
    """How the caller fingerprint is derived.

    Identity keys fall back to the IP and user-agent fingerprint when the
    request carries no bearer credential.
    """

    IDENTITY = "identity"
    IP_USER_AGENT = "ip_user_agent"


class RateLimitConfig(BaseModel):
    """Fixed-window limit for one endpoint class."""

    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(..., gt=0)
    max_requests: int = Field(..., gt=0)
    key_strategy: KeyStrategy = KeyStrategy.IP_USER_AGENT
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False


RATE_LIMIT_PRESETS: dict[EndpointClass, RateLimitConfig] = {
    EndpointClass.PAYMENT: RateLimitConfig(
        window_ms=15 * MINUTE_MS,
        max_requests=5,
        key_strategy=KeyStrategy.IDENTITY,
    ),
    EndpointClass.WEBHOOK: RateLimitConfig(
        window_ms=MINUTE_MS,
        max_requests=10,
        key_strategy=KeyStrategy.IP_USER_AGENT,
        skip_successful_requests=True,
    ),
    EndpointClass.GENERAL: RateLimitConfig(
        window_ms=MINUTE_MS,
        max_requests=60,
        key_strategy=KeyStrategy.IDENTITY,
    ),
    EndpointClass.ADMIN: RateLimitConfig(
        window_ms=5 * MINUTE_MS,
        max_requests=3,
        key_strategy=KeyStrategy.IDENTITY,
    ),
    EndpointClass.ASSISTANT: RateLimitConfig(
        window_ms=MINUTE_MS,
        max_requests=20,
        key_strategy=KeyStrategy.IDENTITY,
        skip_failed_requests=True,
    ),
    EndpointClass.AUTH: RateLimitConfig(
        window_ms=5 * MINUTE_MS,
        max_requests=10,
        key_strategy=KeyStrategy.IP_USER_AGENT,
    ),
    EndpointClass.SUSPICIOUS: RateLimitConfig(
        window_ms=60 * MINUTE_MS,
        max_requests=1,
        key_strategy=KeyStrategy.IP_USER_AGENT,
    ),
}


class RateLimitEntry(BaseModel):
    """Counter of one key in its current window."""

    count: int = Field(..., ge=0)
    window_start_ms: int
    reset_time_ms: int

    def expired(self, now_ms: int) -> bool:
        return now_ms > self.reset_time_ms


class RateLimitResult(BaseModel):
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time_ms: int
    key: str

    def retry_after_seconds(self, now_ms: int) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, -(-(self.reset_time_ms - now_ms) // 1000))
