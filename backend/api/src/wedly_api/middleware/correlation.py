"""Correlation ID middleware for request tracing.

Takes the request ID from ``X-Request-ID`` (or ``X-Correlation-ID``) or
generates a new one, makes it available through contextvars for the
lifetime of the request, and echoes it on the response.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from wedly_shared.utils.logging import clear_correlation_id, set_correlation_id

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware that manages correlation IDs for request tracing."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        incoming_id = request.headers.get(REQUEST_ID_HEADER) or request.headers.get(
            CORRELATION_ID_HEADER
        )
        correlation_id = set_correlation_id(incoming_id)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = correlation_id
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()
