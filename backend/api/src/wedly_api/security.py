"""Security headers and per-endpoint-class CORS profiles.

Every pipeline response, success or error, carries ``SECURITY_HEADERS`` plus
the CORS headers of its endpoint class. Webhooks only ever admit the
payment provider's origin and never allow credentials.
"""

from collections.abc import Mapping
from typing import Any, Literal

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict

from wedly_shared.config import Settings, get_settings
from wedly_shared.services.security_gate import DEVELOPMENT_ORIGINS, is_origin_allowed

EndpointType = Literal["api", "webhook"]

REQUEST_ID_HEADER = "X-Request-ID"

SECURITY_HEADERS: dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "; ".join(
        [
            "default-src 'self'",
            "script-src 'self' https://js.stripe.com",
            "connect-src 'self' https://api.stripe.com",
            "frame-src https://js.stripe.com https://hooks.stripe.com",
            "img-src 'self' data: https:",
            "object-src 'none'",
            "base-uri 'self'",
            "form-action 'self'",
            "upgrade-insecure-requests",
        ]
    ),
    "Permissions-Policy": ", ".join(
        [
            "camera=()",
            "microphone=()",
            "geolocation=()",
            "payment=(self)",
            "usb=()",
        ]
    ),
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}


class CorsProfile(BaseModel):
    """CORS policy of one endpoint class."""

    model_config = ConfigDict(frozen=True)

    allowed_origins: tuple[str, ...]
    allowed_methods: tuple[str, ...]
    allowed_headers: tuple[str, ...]
    credentials: bool
    max_age: int
    allow_localhost: bool = False


WEBHOOK_CORS = CorsProfile(
    allowed_origins=("https://api.stripe.com",),
    allowed_methods=("POST",),
    allowed_headers=("Content-Type", "Stripe-Signature", "User-Agent"),
    credentials=False,
    max_age=0,
)

API_HEADERS = ("Content-Type", "Authorization", "X-Requested-With", "Accept", "Origin")


def get_cors_profile(endpoint_type: EndpointType, settings: Settings | None = None) -> CorsProfile:
    """CORS profile for an endpoint class in the current environment."""
    if endpoint_type == "webhook":
        return WEBHOOK_CORS

    settings = settings or get_settings()
    configured = tuple(settings.allowed_origins)
    if settings.is_production:
        return CorsProfile(
            allowed_origins=configured or (settings.app_base_url.rstrip("/"),),
            allowed_methods=("GET", "POST", "OPTIONS"),
            allowed_headers=API_HEADERS,
            credentials=True,
            max_age=86400,
        )
    return CorsProfile(
        allowed_origins=configured + DEVELOPMENT_ORIGINS,
        allowed_methods=("GET", "POST", "PUT", "DELETE", "OPTIONS"),
        allowed_headers=API_HEADERS + ("Cache-Control",),
        credentials=True,
        max_age=86400,
        allow_localhost=True,
    )


def cors_headers(origin: str | None, endpoint_type: EndpointType) -> dict[str, str]:
    profile = get_cors_profile(endpoint_type)
    headers = {
        "Access-Control-Allow-Methods": ", ".join(profile.allowed_methods),
        "Access-Control-Allow-Headers": ", ".join(profile.allowed_headers),
        "Access-Control-Max-Age": str(profile.max_age),
    }
    if is_origin_allowed(origin, profile.allowed_origins, profile.allow_localhost):
        headers["Access-Control-Allow-Origin"] = origin or ""
        headers["Vary"] = "Origin"
    if profile.credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def response_headers(
    request: Request,
    endpoint_type: EndpointType,
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Security, CORS and any extra headers (rate limit, request id) for a response."""
    headers = dict(SECURITY_HEADERS)
    headers.update(cors_headers(request.headers.get("origin"), endpoint_type))
    if extra:
        headers.update(extra)
    return headers


def secure_json_response(
    content: Any,
    request: Request,
    *,
    status_code: int = 200,
    endpoint_type: EndpointType = "api",
    extra_headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=response_headers(request, endpoint_type, extra_headers),
    )


def preflight_response(request: Request, endpoint_type: EndpointType) -> Response:
    """Empty 200 answer to an ``OPTIONS`` preflight."""
    return Response(status_code=200, headers=response_headers(request, endpoint_type))
