"""Checkout session initiation endpoint.

POST /api/create-checkout-session runs:
security gate (origin validated) → payment rate limit → bearer credential →
buyer email check → Stripe Checkout session creation.
"""

import asyncio
import datetime as dt
import re

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from wedly_shared.models.errors import AppError, ErrorCategory, ErrorResponse, ErrorSeverity, create_error
from wedly_shared.models.rate_limit import EndpointClass
from wedly_shared.services.identity_service import CognitoIdentityProvider
from wedly_shared.services.rate_limiter import RateLimiter
from wedly_shared.services.retry import RetryConfig, with_retry
from wedly_shared.services.security_gate import SecurityGate, SecurityOptions
from wedly_shared.services.stripe_service import StripeService, StripeServiceError
from wedly_shared.utils.logging import get_logger, log_payment_operation

from wedly_api.context import extract_request_context
from wedly_api.dependencies import get_identity, get_payment_gateway, get_rate_limiter, get_security_gate
from wedly_api.exceptions import build_error_response
from wedly_api.models.responses import CheckoutSessionResponse
from wedly_api.pipeline import Pipeline, PipelineCall, bearer_stage, rate_limit_stage, security_stage
from wedly_api.security import REQUEST_ID_HEADER, preflight_response, secure_json_response

logger = get_logger(__name__)

router = APIRouter(tags=["checkout"])

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CHECKOUT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=5.0,
    retryable_error_signatures=("network", "timeout", "temporarily unavailable", "rate limit"),
)

# Normalized Stripe error type → (category, severity, status, user message, retryable)
_GATEWAY_ERRORS: dict[str, tuple[ErrorCategory, ErrorSeverity, int, str, bool]] = {
    "card_error": (
        ErrorCategory.PAYMENT,
        ErrorSeverity.MEDIUM,
        402,
        "Payment processing failed. Please try again or use a different payment method.",
        False,
    ),
    "invalid_request": (
        ErrorCategory.VALIDATION,
        ErrorSeverity.LOW,
        400,
        "Invalid request. Please check your input and try again.",
        False,
    ),
    "rate_limit": (
        ErrorCategory.RATE_LIMIT,
        ErrorSeverity.MEDIUM,
        429,
        "Too many requests. Please wait a moment and try again.",
        True,
    ),
    "configuration": (
        ErrorCategory.CONFIGURATION,
        ErrorSeverity.CRITICAL,
        500,
        "Service configuration error. Please try again later.",
        False,
    ),
    "network": (
        ErrorCategory.NETWORK,
        ErrorSeverity.MEDIUM,
        503,
        "Network error. Please check your connection and try again.",
        True,
    ),
}

_DEFAULT_GATEWAY_ERROR = (
    ErrorCategory.PAYMENT,
    ErrorSeverity.HIGH,
    503,
    "Payment service temporarily unavailable. Please try again in a moment.",
    True,
)


def gateway_error(error: StripeServiceError) -> AppError:
    """Classify a Stripe failure by its normalized type."""
    category, severity, status, user_message, retryable = _GATEWAY_ERRORS.get(
        error.error_type or "", _DEFAULT_GATEWAY_ERROR
    )
    return create_error(
        error.message,
        category,
        severity,
        status,
        user_message,
        context={"stripe_error_code": error.stripe_error_code, "error_type": error.error_type},
        retryable=retryable,
    )


@router.options("/create-checkout-session", include_in_schema=False)
async def checkout_preflight(request: Request) -> Response:
    return preflight_response(request, "api")


@router.post(
    "/create-checkout-session",
    summary="Create a Stripe Checkout session",
    description="""
Creates a one-time payment Checkout session for the authenticated buyer.

**Authentication**: `Authorization: Bearer <access token>` is required.

Redirect the browser to the returned `url`; the purchase is recorded when
the provider's `checkout.session.completed` webhook arrives.
""",
    response_model=CheckoutSessionResponse,
    responses={
        400: {"description": "Invalid buyer email", "model": ErrorResponse},
        401: {"description": "Missing or invalid credential", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        500: {"description": "Payment or configuration failure", "model": ErrorResponse},
        503: {"description": "Dependency temporarily unavailable", "model": ErrorResponse},
    },
)
async def create_checkout_session(
    request: Request,
    gate: SecurityGate = Depends(get_security_gate),
    limiter: RateLimiter = Depends(get_rate_limiter),
    identity: CognitoIdentityProvider = Depends(get_identity),
    gateway: StripeService = Depends(get_payment_gateway),
) -> JSONResponse:
    """Create a Checkout session for the caller."""
    context = extract_request_context(request)
    call = PipelineCall(request=request, context=context)
    pipeline = Pipeline(
        security_stage(gate, SecurityOptions(require_origin=True)),
        rate_limit_stage(limiter, EndpointClass.PAYMENT),
        bearer_stage(identity),
    )

    try:
        await pipeline.run(call)
        buyer = call.verified_identity()

        if not EMAIL_PATTERN.match(buyer.email):
            raise create_error(
                "Authenticated user has an invalid email address",
                ErrorCategory.VALIDATION,
                ErrorSeverity.LOW,
                400,
                "A valid email address is required to complete the purchase.",
            )

        try:
            session = await with_retry(
                lambda: asyncio.to_thread(
                    gateway.create_checkout_session,
                    subject_id=buyer.subject_id,
                    customer_email=buyer.email,
                    request_id=context.request_id,
                ),
                CHECKOUT_RETRY_CONFIG,
                context,
            )
        except StripeServiceError as e:
            raise gateway_error(e) from e

        if not session.get("session_id") or not session.get("url"):
            raise create_error(
                "Checkout session created without an ID or URL",
                ErrorCategory.PAYMENT,
                ErrorSeverity.HIGH,
                500,
                "Payment processing failed. Please try again.",
            )
    except Exception as e:
        if call.rate_limit is not None:
            await limiter.record_outcome(EndpointClass.PAYMENT, call.rate_limit, success=False)
        return build_error_response(e, request, context, endpoint_type="api")

    if call.rate_limit is not None:
        await limiter.record_outcome(EndpointClass.PAYMENT, call.rate_limit, success=True)

    context.session_id = session["session_id"]
    log_payment_operation(
        logger,
        "create_checkout_session",
        session_id=session["session_id"],
        subject_id=buyer.subject_id,
        elapsed_ms=context.elapsed_ms(),
    )

    body = CheckoutSessionResponse(
        session_id=session["session_id"],
        url=session["url"],
        request_id=context.request_id,
        timestamp=dt.datetime.now(dt.UTC),
    )
    return secure_json_response(
        body.model_dump(mode="json", by_alias=True),
        request,
        endpoint_type="api",
        extra_headers={**context.rate_limit_headers, REQUEST_ID_HEADER: context.request_id},
    )
