"""
Domain entities for the convergence bounded context.

Entities represent the objects judged by the pipeline and the records
it produces. They contain no framework imports and no IO operations.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union


class EntityType(Enum):
    """Kind of entity a pipeline run is judging."""

    TRANSACTION = "transaction"
    INSTRUMENT = "instrument"


class ConvergenceStatus(Enum):
    """Agreement level reached by a signal sequence."""

    AGREED = "agreed"
    PARTIAL = "partial"
    CONFLICTING = "conflicting"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class TransactionFeatures:
    """Attributes of a bank transaction awaiting a chart-of-accounts code."""

    amount: Decimal
    merchant_name: Optional[str] = None
    description: Optional[str] = None
    category_primary: Optional[str] = None
    category_detailed: Optional[str] = None
    posted_on: Optional[date] = None
    account_name: Optional[str] = None


@dataclass(frozen=True)
class InstrumentFeatures:
    """Attributes of a tradable instrument awaiting a directional signal.

    ``indicators`` holds the scored categories produced upstream
    (e.g. vol_edge, quality, regime, info_edge), each on a 0-100 scale.
    """

    symbol: str
    last_price: Optional[Decimal] = None
    sector: Optional[str] = None
    strategy: Optional[str] = None
    indicators: dict[str, float] = field(default_factory=dict)


EntityFeatures = Union[TransactionFeatures, InstrumentFeatures]

FEATURES_BY_TYPE: dict[EntityType, type] = {
    EntityType.TRANSACTION: TransactionFeatures,
    EntityType.INSTRUMENT: InstrumentFeatures,
}


@dataclass(frozen=True)
class Entity:
    """The thing being judged: a transaction or an instrument."""

    entity_id: str
    entity_type: EntityType
    features: EntityFeatures


@dataclass(frozen=True)
class Signal:
    """One normalized upstream opinion about an entity's label."""

    source_id: str
    label: str
    confidence: float
    rationale: Optional[str] = None
    produced_at: Optional[datetime] = None


@dataclass(frozen=True)
class ConvergenceAssessment:
    """Agreement assessment derived from a signal sequence.

    Attributes:
        status: Agreement level.
        candidate_label: Label of the heaviest group, None when no signals.
        aggregate_confidence: Weight share of the candidate group (0-1).
        total_weight: Sum of all signal confidences.
        candidate_support: Number of sources backing the candidate.
        candidate_mean_confidence: Mean confidence of those sources.
        ranking: (label, weight) pairs, heaviest first, tie-broken.
    """

    status: ConvergenceStatus
    candidate_label: Optional[str]
    aggregate_confidence: float
    total_weight: float = 0.0
    candidate_support: int = 0
    candidate_mean_confidence: float = 0.0
    ranking: tuple[tuple[str, float], ...] = ()

    @property
    def effective_confidence(self) -> float:
        """Candidate share discounted by how sure its supporters are."""
        return round(self.aggregate_confidence * self.candidate_mean_confidence, 4)

    @property
    def proposed_labels(self) -> frozenset[str]:
        """Every label proposed by at least one signal."""
        return frozenset(label for label, _ in self.ranking)


@dataclass(frozen=True)
class AdjudicationRecord:
    """Outcome of one AI arbitration run, successful or degraded."""

    final_label: Optional[str]
    rationale: str
    model_latency_ms: float
    degraded: bool
    novel_label: bool = False
    confidence: Optional[float] = None
    attempts: int = 0
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class PipelineResult:
    """Externally visible outcome of one synthesis run. Immutable once built."""

    entity_id: str
    entity_type: EntityType
    final_label: Optional[str]
    confidence: float
    status: ConvergenceStatus
    used_arbitration: bool
    degraded: bool
    fingerprint: str
    created_at: datetime
    assessment: ConvergenceAssessment
    adjudication: Optional[AdjudicationRecord] = None
    degradation_reason: Optional[str] = None
    rejected_signals: int = 0
    pipeline_ms: float = 0.0


@dataclass(frozen=True)
class Caller:
    """Verified identity and subscription tier of the requesting user."""

    user_id: str
    tier: Optional[str]


@dataclass(frozen=True)
class ModelCompletion:
    """Raw reply from the generative-AI service."""

    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class AdjudicationPrompts:
    """System prompt and user template used for one entity type."""

    system: str
    user_template: str
