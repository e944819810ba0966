"""Admission pipeline: an ordered chain of async stages over one request.

Each stage reads and annotates a shared ``PipelineCall`` and rejects the
request by raising an AppError. Routes compose the stages they need and
catch once at the top.

Usage:
    pipeline = Pipeline(
        security_stage(gate, SecurityOptions(webhook=True)),
        rate_limit_stage(limiter, EndpointClass.WEBHOOK),
        read_body_stage(gate),
        signature_stage(verifier),
    )
    call = await pipeline.run(PipelineCall(request, context))
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Request

from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import (
    GENERIC_USER_MESSAGE,
    AppError,
    ErrorCategory,
    ErrorSeverity,
    create_error,
)
from wedly_shared.models.rate_limit import EndpointClass, RateLimitResult
from wedly_shared.models.webhook import WebhookEvent
from wedly_shared.services.identity_service import (
    CognitoIdentityProvider,
    IdentityServiceError,
    VerifiedIdentity,
)
from wedly_shared.services.rate_limiter import RateLimiter
from wedly_shared.services.retry import RetryConfig, with_retry
from wedly_shared.services.security_gate import SecurityGate, SecurityOptions
from wedly_shared.services.webhook_verifier import WebhookVerifier

SIGNATURE_HEADER = "stripe-signature"

CREDENTIAL_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    retryable_error_signatures=("network", "timeout", "unavailable"),
)


@dataclass
class PipelineCall:
    """State one request accumulates while passing through the stages."""

    request: Request
    context: RequestContext
    body: bytes = b""
    rate_limit: RateLimitResult | None = None
    event: WebhookEvent | None = None
    identity: VerifiedIdentity | None = None

    def verified_event(self) -> WebhookEvent:
        """The event the signature stage verified."""
        if self.event is None:
            raise _stage_missing("verified webhook event")
        return self.event

    def verified_identity(self) -> VerifiedIdentity:
        """The subject the bearer stage authenticated."""
        if self.identity is None:
            raise _stage_missing("authenticated identity")
        return self.identity


def _stage_missing(what: str) -> AppError:
    return create_error(
        f"Pipeline finished without a {what}",
        ErrorCategory.INTERNAL,
        ErrorSeverity.HIGH,
        500,
        GENERIC_USER_MESSAGE,
    )


Stage = Callable[[PipelineCall], Awaitable[None]]


class Pipeline:
    """Runs stages in order; the first one to raise ends the run."""

    def __init__(self, *stages: Stage) -> None:
        self._stages = stages

    async def run(self, call: PipelineCall) -> PipelineCall:
        for stage in self._stages:
            await stage(call)
        return call


def security_stage(gate: SecurityGate, options: SecurityOptions) -> Stage:
    async def check_security(call: PipelineCall) -> None:
        gate.check(call.request.headers, call.context, options)

    return check_security


def rate_limit_stage(limiter: RateLimiter, endpoint_class: EndpointClass) -> Stage:
    async def check_rate_limit(call: PipelineCall) -> None:
        call.rate_limit = await limiter.enforce(endpoint_class, call.request.headers, call.context)

    return check_rate_limit


def read_body_stage(gate: SecurityGate) -> Stage:
    """Read the raw body once, unparsed, stopping as soon as it passes the size limit.

    A body without Content-Length (chunked) is never buffered past the limit.
    """

    async def read_body(call: PipelineCall) -> None:
        buffer = bytearray()
        async for chunk in call.request.stream():
            buffer.extend(chunk)
            gate.enforce_size(len(buffer), call.context)
        call.body = bytes(buffer)

    return read_body


def signature_stage(verifier: WebhookVerifier) -> Stage:
    async def verify_signature(call: PipelineCall) -> None:
        signature = call.request.headers.get(SIGNATURE_HEADER)
        if not signature:
            raise create_error(
                "Missing Stripe-Signature header",
                ErrorCategory.WEBHOOK,
                ErrorSeverity.HIGH,
                400,
                "Missing webhook signature.",
            )
        call.event = await asyncio.to_thread(verifier.verify, call.body, signature)
        call.context.event_id = call.event.id

    return verify_signature


def bearer_stage(identity: CognitoIdentityProvider) -> Stage:
    """Require ``Authorization: Bearer`` and resolve it to a verified subject."""

    async def authenticate(call: PipelineCall) -> None:
        authorization = call.request.headers.get("authorization") or ""
        if not authorization.startswith("Bearer ") or not authorization[7:].strip():
            raise create_error(
                "Authorization header missing or invalid format",
                ErrorCategory.AUTHENTICATION,
                ErrorSeverity.MEDIUM,
                401,
                "Authentication required. Please log in and try again.",
            )
        token = authorization[7:].strip()

        try:
            verified = await with_retry(
                lambda: asyncio.to_thread(identity.verify_credential, token),
                CREDENTIAL_RETRY_CONFIG,
                call.context,
            )
        except IdentityServiceError as e:
            if e.error_type == "authentication":
                raise create_error(
                    e.message,
                    ErrorCategory.AUTHENTICATION,
                    ErrorSeverity.MEDIUM,
                    401,
                    "Authentication failed. Please log in and try again.",
                ) from e
            raise create_error(
                e.message,
                ErrorCategory.NETWORK,
                ErrorSeverity.MEDIUM,
                503,
                "Authentication service temporarily unavailable. Please try again.",
                retryable=True,
            ) from e

        call.identity = verified
        call.context.subject_id = verified.subject_id
        call.context.subject_email = verified.email

    return authenticate
