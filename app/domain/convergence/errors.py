"""
Domain-specific errors for the convergence bounded context.

All errors raised from the domain layer must be defined here.
These are mapped to HTTP responses at the interface layer.
No framework imports allowed.
"""

from typing import Optional


class ConvergenceDomainError(Exception):
    """Base error for all convergence domain errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class EntityValidationError(ConvergenceDomainError):
    """Raised when a submitted entity is missing or has invalid fields."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid entity field '{field}': {reason}")
        self.field = field
        self.reason = reason


class MalformedSignalError(ConvergenceDomainError):
    """Raised when one upstream signal record cannot be normalized."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Malformed signal from {source}: {reason}")
        self.source = source
        self.reason = reason


class TierDeniedError(ConvergenceDomainError):
    """Raised when the caller may not trigger AI arbitration."""

    def __init__(self, tier: str, reason: str) -> None:
        super().__init__(f"Arbitration denied for tier {tier}: {reason}")
        self.tier = tier
        self.reason = reason


class AIServiceError(ConvergenceDomainError):
    """Raised when one call to the generative-AI service fails.

    ``retry_after`` carries the service's back-off hint in seconds, if any.
    """

    def __init__(self, reason: str, retry_after: Optional[float] = None) -> None:
        super().__init__(f"AI service error: {reason}")
        self.reason = reason
        self.retry_after = retry_after


class BudgetExceededError(AIServiceError):
    """Raised when the arbitration wall-clock budget is exhausted."""

    def __init__(self, budget_seconds: float) -> None:
        super().__init__(f"wall-clock budget of {budget_seconds:.1f}s exhausted")
        self.budget_seconds = budget_seconds


class InternalPipelineError(ConvergenceDomainError):
    """Raised when a non-AI pipeline stage fails unexpectedly."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"Pipeline stage '{stage}' failed: {reason}")
        self.stage = stage
        self.reason = reason


class AuthenticationRequiredError(ConvergenceDomainError):
    """Raised when the request carries no valid session."""

    def __init__(self) -> None:
        super().__init__("Authentication required")


class CallerNotFoundError(ConvergenceDomainError):
    """Raised when a verified session maps to no known user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class TierUpgradeRequiredError(ConvergenceDomainError):
    """Raised when the caller's tier lacks a route's entitlement."""

    def __init__(self, tier: str, feature: str) -> None:
        super().__init__(
            f"This feature requires a plan with {feature} access (current: {tier})"
        )
        self.tier = tier
        self.feature = feature
