"""
Data Transfer Objects for the convergence application layer.

DTOs carry data between the interface and application layers.
They are plain dataclasses with no behavior.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from app.domain.convergence.entities import Caller, Entity, EntityType, PipelineResult


@dataclass(frozen=True)
class SynthesizeCommand:
    """Input DTO for one synthesis run.

    Attributes:
        entity: The transaction or instrument to judge.
        raw_signals: Upstream records exactly as received.
        caller: Verified identity and tier of the requester.
        refresh: Skip the cache lookup and recompute.
    """

    entity: Entity
    raw_signals: tuple[Any, ...]
    caller: Caller
    refresh: bool = False


@dataclass(frozen=True)
class SynthesisOutcome:
    """Output DTO wrapping a pipeline result with cache metadata.

    Attributes:
        result: The pipeline result.
        cache_hit: True if the result came from the cache.
        cache_age_seconds: Age of the cached entry on a hit.
    """

    result: PipelineResult
    cache_hit: bool
    cache_age_seconds: float = 0.0


@dataclass(frozen=True)
class PipelinePolicy:
    """Orchestration settings for the synthesis use case.

    Attributes:
        budget_seconds: Wall-clock budget for one pipeline run.
        arbitration_confidence_floor: Effective confidence under which a
            partial assessment is sent to arbitration.
        fallback_labels: Label used when no signal proposes one.
    """

    budget_seconds: float = 300.0
    arbitration_confidence_floor: float = 0.6
    fallback_labels: dict[EntityType, Optional[str]] = field(default_factory=dict)
