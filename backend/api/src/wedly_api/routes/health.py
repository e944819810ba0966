"""Health check endpoint."""

import datetime as dt

from fastapi import APIRouter

from wedly_shared import __version__
from wedly_shared.config import get_settings

from wedly_api.models.responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness check; touches no external dependency."""
    settings = get_settings()
    return HealthResponse(
        timestamp=dt.datetime.now(dt.UTC),
        service=settings.service_name,
        version=__version__,
        environment=settings.environment,
    )
