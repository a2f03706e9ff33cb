"""
Centralized error handlers for FastAPI.

Maps domain-specific errors to HTTP responses.
No stack traces or internal details are exposed to clients.
All error responses use the ErrorResponse schema.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.domain.convergence.errors import (
    AuthenticationRequiredError,
    CallerNotFoundError,
    ConvergenceDomainError,
    EntityValidationError,
    InternalPipelineError,
    TierUpgradeRequiredError,
)

logger = logging.getLogger(__name__)

HTTP_401 = 401
HTTP_403 = 403
HTTP_404 = 404
HTTP_422 = 422
HTTP_500 = 500


def _error_response(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: dict[str, str | None] = {"error": error}
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    """Register all domain error handlers on the FastAPI application.

    Args:
        app: The FastAPI application instance.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request bodies or queries that fail schema validation."""
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        logger.info("Rejected invalid request: %s", problems)
        return _error_response(HTTP_422, "Invalid request", problems)

    @app.exception_handler(EntityValidationError)
    async def handle_entity_validation(
        _request: Request, exc: EntityValidationError
    ) -> JSONResponse:
        """Handle malformed entity submissions."""
        logger.warning("Invalid entity field %s: %s", exc.field, exc.reason)
        return _error_response(HTTP_422, "Invalid entity", exc.message)

    @app.exception_handler(AuthenticationRequiredError)
    async def handle_authentication_required(
        _request: Request, exc: AuthenticationRequiredError
    ) -> JSONResponse:
        """Handle requests without a valid session cookie."""
        logger.info("Rejected unauthenticated request")
        return _error_response(HTTP_401, "Authentication required")

    @app.exception_handler(CallerNotFoundError)
    async def handle_caller_not_found(
        _request: Request, exc: CallerNotFoundError
    ) -> JSONResponse:
        """Handle sessions that map to no stored user."""
        logger.warning("Session user not found")
        return _error_response(HTTP_404, "User not found")

    @app.exception_handler(TierUpgradeRequiredError)
    async def handle_tier_upgrade_required(
        _request: Request, exc: TierUpgradeRequiredError
    ) -> JSONResponse:
        """Handle callers whose tier lacks the route's entitlement."""
        logger.info("Tier %s lacks %s", exc.tier, exc.feature)
        return _error_response(HTTP_403, "Upgrade required", exc.message)

    @app.exception_handler(InternalPipelineError)
    async def handle_internal_pipeline(
        _request: Request, exc: InternalPipelineError
    ) -> JSONResponse:
        """Handle unexpected failures in non-AI pipeline stages."""
        logger.error("Pipeline stage %s failed: %s", exc.stage, exc.reason)
        return _error_response(HTTP_500, "Synthesis failed")

    @app.exception_handler(ConvergenceDomainError)
    async def handle_convergence_domain(
        _request: Request, exc: ConvergenceDomainError
    ) -> JSONResponse:
        """Catch-all for unhandled convergence domain errors."""
        logger.error("Unhandled convergence domain error: %s", exc.message)
        return _error_response(HTTP_500, "Internal server error")

    @app.exception_handler(Exception)
    async def handle_unexpected(
        _request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all for unexpected errors. Never exposes internals."""
        logger.exception("Unexpected error: %s", type(exc).__name__)
        return _error_response(HTTP_500, "Internal server error")
