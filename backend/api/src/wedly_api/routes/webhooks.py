"""Payment provider webhook endpoint.

POST /webhooks/payment runs:
security gate → webhook rate limit → raw body → signature verification →
ledger bracket and purchase processing (``WebhookHandler``) → acknowledgement.

No bearer authentication: deliveries are authenticated by their signature.
Duplicates and unsupported events are acknowledged with 200 so the provider
stops redelivering them.
"""

import datetime as dt

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from wedly_shared.models.errors import ErrorResponse
from wedly_shared.models.rate_limit import EndpointClass
from wedly_shared.services.rate_limiter import RateLimiter
from wedly_shared.services.security_gate import SecurityGate, SecurityOptions
from wedly_shared.services.stripe_service import StripeService
from wedly_shared.services.webhook_handler import WebhookHandler
from wedly_shared.services.webhook_verifier import WebhookVerifier
from wedly_shared.utils.logging import get_logger

from wedly_api.context import extract_request_context
from wedly_api.dependencies import (
    get_rate_limiter,
    get_security_gate,
    get_webhook_handler,
    get_webhook_verifier,
)
from wedly_api.exceptions import build_error_response
from wedly_api.models.responses import WebhookAck
from wedly_api.pipeline import (
    Pipeline,
    PipelineCall,
    rate_limit_stage,
    read_body_stage,
    security_stage,
    signature_stage,
)
from wedly_api.security import REQUEST_ID_HEADER, preflight_response, secure_json_response

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.options("/webhooks/payment", include_in_schema=False)
async def webhook_preflight(request: Request) -> Response:
    return preflight_response(request, "webhook")


@router.post(
    "/webhooks/payment",
    summary="Receive payment provider events",
    description="""
Receives signed events from Stripe.

**Signature**: `Stripe-Signature` header is required and verified against the raw body.

**Idempotent**: a repeated event ID returns 200 with `message: "already processed"`
and runs no side effects.
""",
    response_model=WebhookAck,
    responses={
        400: {"description": "Missing or invalid signature, malformed body", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        500: {"description": "Internal or configuration failure", "model": ErrorResponse},
        503: {"description": "Dependency temporarily unavailable", "model": ErrorResponse},
    },
)
async def receive_payment_webhook(
    request: Request,
    gate: SecurityGate = Depends(get_security_gate),
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> JSONResponse:
    """Handle one webhook delivery end to end."""
    context = extract_request_context(request)
    call = PipelineCall(request=request, context=context)
    pipeline = Pipeline(
        security_stage(gate, SecurityOptions(webhook=True)),
        rate_limit_stage(limiter, EndpointClass.WEBHOOK),
        read_body_stage(gate),
        signature_stage(verifier),
    )

    try:
        await pipeline.run(call)
        outcome = await handler.handle(
            call.verified_event(),
            context,
            payload_hash=StripeService.compute_payload_hash(call.body),
        )
    except Exception as e:
        if call.rate_limit is not None:
            await limiter.record_outcome(EndpointClass.WEBHOOK, call.rate_limit, success=False)
        return build_error_response(e, request, context, endpoint_type="webhook")

    if call.rate_limit is not None:
        await limiter.record_outcome(EndpointClass.WEBHOOK, call.rate_limit, success=True)

    ack = WebhookAck(
        event_id=outcome.event_id,
        request_id=context.request_id,
        timestamp=dt.datetime.now(dt.UTC),
        processing_time_ms=context.elapsed_ms(),
        message=outcome.message,
    )
    return secure_json_response(
        ack.model_dump(mode="json", by_alias=True, exclude_none=True),
        request,
        endpoint_type="webhook",
        extra_headers={**context.rate_limit_headers, REQUEST_ID_HEADER: context.request_id},
    )
