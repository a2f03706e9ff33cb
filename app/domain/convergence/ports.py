"""
Port interfaces (ABCs) for the convergence bounded context.

Ports define the contracts that the domain requires from the outside world.
Infrastructure adapters implement these interfaces.
The domain layer never depends on concrete implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from app.domain.convergence.entities import (
    AdjudicationPrompts,
    EntityType,
    ModelCompletion,
    PipelineResult,
)


class GenerativeModelPort(ABC):
    """Port for the external generative-AI service.

    Implementations must be safe to share across concurrent requests
    and must raise AIServiceError for every service-side failure.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the model requests are sent to."""
        raise NotImplementedError

    @abstractmethod
    async def complete(
        self, system_prompt: str, user_prompt: str, timeout: float
    ) -> ModelCompletion:
        """Request one completion.

        Args:
            system_prompt: Instructions for the model.
            user_prompt: The case to adjudicate.
            timeout: Hard limit in seconds for this single call.

        Returns:
            The generated text and token usage.

        Raises:
            AIServiceError: On any transport or service failure.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources held by the client."""
        return None


class PromptRepository(ABC):
    """Port for loading adjudication prompt templates."""

    @abstractmethod
    def get_prompts(self, entity_type: EntityType) -> AdjudicationPrompts:
        """Return the prompt pair for an entity type."""
        raise NotImplementedError


class TierRepository(ABC):
    """Port for reading subscription tiers and arbitration quota."""

    @abstractmethod
    async def get_tier(self, user_id: str) -> Optional[str]:
        """Return the stored tier string, or None if the user is unknown."""
        raise NotImplementedError

    @abstractmethod
    async def consume_arbitration_quota(
        self, user_id: str, period: str, limit: int
    ) -> bool:
        """Atomically consume one arbitration for the billing period.

        Args:
            user_id: Caller identity.
            period: Billing period key (YYYY-MM).
            limit: Maximum arbitrations allowed in the period.

        Returns:
            True if a unit was consumed, False if the quota is exhausted.
        """
        raise NotImplementedError

    async def dispose(self) -> None:
        """Release pooled connections."""
        return None


class SessionVerifierPort(ABC):
    """Port for verifying a signed session cookie."""

    @abstractmethod
    def verify(self, cookie_value: Optional[str]) -> Optional[str]:
        """Return the verified user id, or None if missing or tampered."""
        raise NotImplementedError


@dataclass(frozen=True)
class CacheLookup:
    """A pipeline result together with how it was obtained."""

    result: PipelineResult
    cache_hit: bool
    age_seconds: float = 0.0


ResultFactory = Callable[[], Awaitable[PipelineResult]]


class ResultCachePort(ABC):
    """Port for memoizing and deduplicating pipeline runs by fingerprint."""

    @abstractmethod
    async def get_or_compute(
        self,
        fingerprint: str,
        compute: ResultFactory,
        refresh: bool = False,
    ) -> CacheLookup:
        """Return a cached result or run ``compute`` at most once per fingerprint."""
        raise NotImplementedError

    @abstractmethod
    def invalidate(self, fingerprint: Optional[str] = None) -> int:
        """Drop one entry, or all entries when no fingerprint is given."""
        raise NotImplementedError

    @abstractmethod
    def __len__(self) -> int:
        raise NotImplementedError
