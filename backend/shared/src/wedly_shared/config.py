"""Environment-driven settings for the payment pipeline.

Plain values come from environment variables; provider secrets are read
lazily from SSM Parameter Store by the services that need them (see
``Settings.stripe_parameter``).
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field

DEFAULT_MAX_REQUEST_BYTES = 1024 * 1024


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration.

    Usage:
        settings = get_settings()
        table = settings.table_name("purchases")
    """

    environment: str = Field(default="dev", examples=["dev", "staging", "prod"])
    service_name: str = "wedly-payments"
    app_base_url: str = "http://localhost:3000"
    allowed_origins: list[str] = Field(default_factory=list)
    table_prefix: str | None = Field(
        default=None, description="Overrides the wedly-{environment} table prefix"
    )
    max_request_bytes: int = Field(default=DEFAULT_MAX_REQUEST_BYTES, gt=0)
    webhook_tolerance_seconds: int = Field(default=300, gt=0)
    stuck_event_minutes: int = Field(default=15, gt=0)
    rate_limit_backend: str = Field(default="memory", pattern="^(memory|dynamodb)$")
    email_from: str = "Wedly <noreply@wedly.app>"
    email_reply_to: str | None = None
    product_name: str = "Wedly Service"
    product_description: str = "One-time payment for Wedly service access"
    product_price_minor_units: int = Field(default=4999, gt=0)
    product_currency: str = "aud"
    checkout_session_ttl_hours: int = Field(default=24, ge=1, le=24)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        environment = os.environ.get("ENVIRONMENT", "dev")
        origins = _env_list("ALLOWED_ORIGINS")
        values: dict[str, object] = {
            "environment": environment,
            "app_base_url": os.environ.get("APP_BASE_URL", "http://localhost:3000"),
            "allowed_origins": origins,
            "table_prefix": os.environ.get("DYNAMODB_TABLE_PREFIX"),
            "rate_limit_backend": os.environ.get("RATE_LIMIT_BACKEND", "memory"),
            "email_from": os.environ.get("EMAIL_FROM", "Wedly <noreply@wedly.app>"),
            "email_reply_to": os.environ.get("EMAIL_REPLY_TO"),
            "product_name": os.environ.get("PRODUCT_NAME", "Wedly Service"),
            "product_description": os.environ.get(
                "PRODUCT_DESCRIPTION", "One-time payment for Wedly service access"
            ),
            "product_currency": os.environ.get("PRODUCT_CURRENCY", "aud"),
        }
        for key, env_name in (
            ("max_request_bytes", "MAX_REQUEST_BYTES"),
            ("webhook_tolerance_seconds", "WEBHOOK_TOLERANCE_SECONDS"),
            ("stuck_event_minutes", "STUCK_EVENT_MINUTES"),
            ("product_price_minor_units", "PRODUCT_PRICE_MINOR_UNITS"),
            ("checkout_session_ttl_hours", "CHECKOUT_SESSION_TTL_HOURS"),
        ):
            if env_name in os.environ:
                values[key] = int(os.environ[env_name])
        return cls.model_validate(values)

    @property
    def is_production(self) -> bool:
        return self.environment in ("prod", "production")

    @property
    def name_prefix(self) -> str:
        return self.table_prefix or f"wedly-{self.environment}"

    def table_name(self, table: str) -> str:
        """Full DynamoDB table name for a logical table."""
        return f"{self.name_prefix}-{table}"

    def stripe_parameter(self, name: str) -> str:
        """SSM path of a payment-provider secret (``secret_key``, ``webhook_secret``)."""
        return f"/wedly/{self.environment}/stripe/{name}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings (cached; ``get_settings.cache_clear()`` in tests)."""
    return Settings.from_env()
