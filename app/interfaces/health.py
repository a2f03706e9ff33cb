"""
Health check router.

Provides a simple health endpoint for liveness/readiness probes.
No business logic. Returns application status, version and the number
of cached pipeline results.
"""

from fastapi import APIRouter, Request

from app.core.config import settings
from app.interfaces.convergence.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns application health status, version and cache size.",
)
def health_check(request: Request) -> HealthResponse:
    """Return current application health status."""
    cache = getattr(request.app.state, "result_cache", None)
    return HealthResponse(
        status="ok",
        version=settings.version,
        cached_results=len(cache) if cache is not None else 0,
    )
