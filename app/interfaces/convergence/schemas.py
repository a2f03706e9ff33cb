"""
Pydantic schemas for convergence API request/response validation.

These schemas enforce input validation and define the API contract.
Upstream signal records stay free-form: their shape depends on the
producing source and is normalized in the domain layer.
No business logic belongs here.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from app.domain.convergence.entities import (
    AdjudicationRecord,
    ConvergenceAssessment,
    PipelineResult,
)

ENTITY_ID_MAX_LEN = 128
MAX_SIGNALS = 50
SYMBOL_PATTERN = r"^[A-Za-z0-9.\-^]+$"


class TransactionFeaturesSchema(BaseModel):
    """Bank transaction attributes.

    Attributes:
        amount: Signed transaction amount.
        merchant_name: Merchant as reported by the bank feed.
        description: Raw bank description line.
        category_primary: Bank-provided primary category.
        category_detailed: Bank-provided detailed category.
        posted_on: Posting date.
        account_name: Source account display name.
    """

    amount: Decimal = Field(..., allow_inf_nan=False)
    merchant_name: str | None = Field(default=None, max_length=256)
    description: str | None = Field(default=None, max_length=1024)
    category_primary: str | None = Field(default=None, max_length=128)
    category_detailed: str | None = Field(default=None, max_length=128)
    posted_on: date | None = None
    account_name: str | None = Field(default=None, max_length=128)


class InstrumentFeaturesSchema(BaseModel):
    """Tradable instrument attributes."""

    symbol: str = Field(..., min_length=1, max_length=16, pattern=SYMBOL_PATTERN)
    last_price: Decimal | None = Field(default=None, allow_inf_nan=False)
    sector: str | None = Field(default=None, max_length=128)
    strategy: str | None = Field(default=None, max_length=64)
    indicators: dict[str, float] = Field(default_factory=dict)


class TransactionEntitySchema(BaseModel):
    """A transaction to categorize."""

    entity_id: str = Field(..., min_length=1, max_length=ENTITY_ID_MAX_LEN)
    features: TransactionFeaturesSchema


class InstrumentEntitySchema(BaseModel):
    """An instrument to score."""

    entity_id: str = Field(..., min_length=1, max_length=ENTITY_ID_MAX_LEN)
    features: InstrumentFeaturesSchema


class TransactionSynthesisRequest(BaseModel):
    """Request schema for the bookkeeping synthesis endpoint.

    Attributes:
        entity: The transaction being categorized.
        signals: Raw upstream categorizer records, each tagged with its source.
    """

    entity: TransactionEntitySchema
    signals: list[Any] = Field(default_factory=list, max_length=MAX_SIGNALS)


class InstrumentSynthesisRequest(BaseModel):
    """Request schema for the trading convergence endpoint."""

    entity: InstrumentEntitySchema
    signals: list[Any] = Field(default_factory=list, max_length=MAX_SIGNALS)


class AssessmentSchema(BaseModel):
    """Agreement assessment of the normalized signals."""

    status: str
    candidate_label: str | None
    aggregate_confidence: float
    effective_confidence: float
    total_weight: float
    candidate_support: int
    ranking: list[tuple[str, float]]

    @classmethod
    def from_domain(cls, assessment: ConvergenceAssessment) -> "AssessmentSchema":
        return cls(
            status=assessment.status.value,
            candidate_label=assessment.candidate_label,
            aggregate_confidence=assessment.aggregate_confidence,
            effective_confidence=assessment.effective_confidence,
            total_weight=assessment.total_weight,
            candidate_support=assessment.candidate_support,
            ranking=list(assessment.ranking),
        )


class AdjudicationSchema(BaseModel):
    """AI arbitration record, present only when arbitration ran."""

    final_label: str | None
    rationale: str
    confidence: float | None
    novel_label: bool
    degraded: bool
    attempts: int
    model: str | None
    model_latency_ms: float
    prompt_tokens: int
    completion_tokens: int

    @classmethod
    def from_domain(cls, record: AdjudicationRecord) -> "AdjudicationSchema":
        return cls(
            final_label=record.final_label,
            rationale=record.rationale,
            confidence=record.confidence,
            novel_label=record.novel_label,
            degraded=record.degraded,
            attempts=record.attempts,
            model=record.model,
            model_latency_ms=record.model_latency_ms,
            prompt_tokens=record.prompt_tokens,
            completion_tokens=record.completion_tokens,
        )


class PipelineResultResponse(BaseModel):
    """Response schema for both synthesis endpoints."""

    entity_id: str
    entity_type: str
    final_label: str | None
    confidence: float
    status: str
    used_arbitration: bool
    degraded: bool
    degradation_reason: str | None = None
    fingerprint: str
    created_at: datetime
    rejected_signals: int
    pipeline_ms: float
    assessment: AssessmentSchema
    adjudication: AdjudicationSchema | None = None

    @classmethod
    def from_domain(cls, result: PipelineResult) -> "PipelineResultResponse":
        return cls(
            entity_id=result.entity_id,
            entity_type=result.entity_type.value,
            final_label=result.final_label,
            confidence=result.confidence,
            status=result.status.value,
            used_arbitration=result.used_arbitration,
            degraded=result.degraded,
            degradation_reason=result.degradation_reason,
            fingerprint=result.fingerprint,
            created_at=result.created_at,
            rejected_signals=result.rejected_signals,
            pipeline_ms=result.pipeline_ms,
            assessment=AssessmentSchema.from_domain(result.assessment),
            adjudication=(
                AdjudicationSchema.from_domain(result.adjudication)
                if result.adjudication is not None
                else None
            ),
        )


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    cached_results: int = 0


class ErrorResponse(BaseModel):
    """Standard error response returned by all error handlers."""

    error: str
    detail: str | None = None
