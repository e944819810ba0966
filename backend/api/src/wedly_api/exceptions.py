"""Translation of failures into the uniform error envelope.

Every error response has the body ``{error, code, requestId, timestamp,
retryable}``, the status of the classified AppError, and the security,
CORS and rate-limit headers of the request. Raw exception text never
reaches the body: only the sanitized user message does.

Usage:
    Register handlers in FastAPI app:

    from wedly_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import AppError, classify_exception
from wedly_shared.utils.logging import get_correlation_id, get_logger, log_error

from wedly_api.security import REQUEST_ID_HEADER, EndpointType, response_headers

logger = get_logger(__name__)


def build_error_response(
    error: BaseException,
    request: Request,
    context: RequestContext | None = None,
    endpoint_type: EndpointType = "api",
) -> JSONResponse:
    """Classify, log and render a failure.

    Args:
        error: AppError or any raw exception
        request: The failing request
        context: Request context, if the pipeline built one
        endpoint_type: CORS profile of the endpoint

    Returns:
        JSONResponse carrying the error envelope
    """
    context = context or getattr(request.state, "context", None)
    request_id = context.request_id if context else get_correlation_id()
    app_error = classify_exception(error, request_id=request_id)
    log_error(logger, app_error, context)

    extra: dict[str, str] = {}
    if context is not None:
        extra.update(context.rate_limit_headers)
    if request_id:
        extra[REQUEST_ID_HEADER] = request_id

    body = app_error.to_response(request_id).model_dump(mode="json", by_alias=True)
    return JSONResponse(
        status_code=app_error.http_status,
        content=body,
        headers=response_headers(request, endpoint_type, extra),
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle AppErrors raised outside a route's own top-level catch."""
    return build_error_response(exc, request)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for uncaught exceptions: classified envelope, never raw text."""
    return build_error_response(exc, request)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
