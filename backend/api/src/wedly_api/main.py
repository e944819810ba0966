"""FastAPI application for the Wedly payment API.

This package provides REST endpoints for:
- Payment provider webhooks (POST /webhooks/payment)
- Checkout session initiation (POST /api/create-checkout-session)
- Health checks (/api/ping, /api/health)
"""

import datetime as dt
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from mangum import Mangum

from wedly_shared import __version__
from wedly_shared.config import get_settings
from wedly_shared.utils.logging import configure_logging, get_logger

from wedly_api.dependencies import get_rate_limiter
from wedly_api.exceptions import register_exception_handlers
from wedly_api.middleware.correlation import CorrelationIdMiddleware
from wedly_api.routes.checkout import router as checkout_router
from wedly_api.routes.health import router as health_router
from wedly_api.routes.webhooks import router as webhooks_router

configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the rate-limit sweeper for the lifetime of the server."""
    limiter = get_rate_limiter()
    limiter.start_sweeper()
    try:
        yield
    finally:
        await limiter.stop_sweeper()


app = FastAPI(
    title="Wedly Payment API",
    description="Payment webhook processing and checkout session initiation",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)

# Register exception handlers for consistent error responses
register_exception_handlers(app)

# Webhooks are served at the root (/webhooks/payment); everything else under /api
app.include_router(webhooks_router)
app.include_router(health_router, prefix="/api")
app.include_router(checkout_router, prefix="/api")


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    """Root health check endpoint at /api/ping."""
    return {
        "status": "ok",
        "timestamp": dt.datetime.now(dt.UTC).isoformat(),
        "service": get_settings().service_name,
        "version": __version__,
    }


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = False) -> None:
    """Run the FastAPI server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to listen on (default: 8080)
        reload: Enable hot reload for development (default: False)
    """
    import uvicorn

    if reload:
        # Use string reference for reload mode (uvicorn requirement)
        uvicorn.run(
            "wedly_api.main:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["backend/api/src", "backend/shared/src"],
        )
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
