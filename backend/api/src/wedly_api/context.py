"""Request context extraction for pipeline endpoints."""

from fastapi import Request

from wedly_shared.models.context import RequestContext
from wedly_shared.services.rate_limiter import client_ip
from wedly_shared.utils.logging import get_correlation_id, set_correlation_id

from wedly_api.middleware.correlation import CORRELATION_ID_HEADER, REQUEST_ID_HEADER


def extract_request_context(request: Request) -> RequestContext:
    """Build the RequestContext of an inbound request.

    The request ID is the one the correlation middleware bound, else the
    inbound correlation header, else a fresh one. The caller IP is the first
    forwarded-for hop, else ``x-real-ip``, else ``"unknown"``.
    """
    request_id = (
        get_correlation_id()
        or request.headers.get(REQUEST_ID_HEADER)
        or request.headers.get(CORRELATION_ID_HEADER)
    )
    request_id = set_correlation_id(request_id)

    context = RequestContext(
        request_id=request_id,
        method=request.method,
        endpoint=request.url.path,
        caller_ip=client_ip(request.headers),
        user_agent=request.headers.get("user-agent"),
    )
    request.state.context = context
    return context
