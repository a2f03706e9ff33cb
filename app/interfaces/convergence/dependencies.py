"""
Dependency injection for the convergence bounded context.

Provides FastAPI dependency functions that hand the process-wide
singletons built in the application lifespan to the routes, and that
resolve the calling user from the signed session cookie.
"""

from typing import Callable

from fastapi import Depends, Request

from app.application.convergence.synthesize import SynthesizeConvergenceUseCase
from app.core.config import settings
from app.domain.convergence.entities import Caller
from app.domain.convergence.errors import (
    AuthenticationRequiredError,
    CallerNotFoundError,
    TierUpgradeRequiredError,
)
from app.domain.convergence.ports import SessionVerifierPort, TierRepository
from app.domain.convergence.tiers import Feature, can_access, normalize_tier


def get_synthesize_use_case(request: Request) -> SynthesizeConvergenceUseCase:
    """Return the shared SynthesizeConvergenceUseCase."""
    return request.app.state.synthesize_use_case


def get_session_verifier(request: Request) -> SessionVerifierPort:
    """Return the shared session cookie verifier."""
    return request.app.state.session_verifier


def get_tier_repository(request: Request) -> TierRepository:
    """Return the shared tier store."""
    return request.app.state.tier_repository


async def get_current_caller(
    request: Request,
    verifier: SessionVerifierPort = Depends(get_session_verifier),
    tier_repo: TierRepository = Depends(get_tier_repository),
) -> Caller:
    """Resolve the verified caller and their stored tier.

    Raises:
        AuthenticationRequiredError: No cookie, or the signature is invalid.
        CallerNotFoundError: The signed email matches no user.
    """
    email = verifier.verify(request.cookies.get(settings.session_cookie_name))
    if email is None:
        raise AuthenticationRequiredError()
    tier = await tier_repo.get_tier(email)
    if tier is None:
        raise CallerNotFoundError(email)
    return Caller(user_id=email, tier=tier)


def require_feature(feature: Feature) -> Callable:
    """Build a dependency that admits only callers entitled to a feature."""

    async def _dependency(caller: Caller = Depends(get_current_caller)) -> Caller:
        if not can_access(caller.tier, feature):
            raise TierUpgradeRequiredError(normalize_tier(caller.tier).value, feature.value)
        return caller

    return _dependency
