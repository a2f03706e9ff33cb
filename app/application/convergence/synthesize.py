"""
Use case: Synthesize a single adjudicated label from independent signals.

Input: SynthesizeCommand (entity, raw signals, caller, refresh flag)
Output: SynthesisOutcome (PipelineResult + cache metadata)
Side effects: Cache write; one arbitration quota unit and AI call when
    arbitration runs.
Failure cases: EntityValidationError, InternalPipelineError.
    AI-stage failures and tier denials only degrade the result.
"""

import logging
import math
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from app.application.convergence.dtos import (
    PipelinePolicy,
    SynthesisOutcome,
    SynthesizeCommand,
)
from app.domain.convergence.adjudicator import (
    AISynthesisAdjudicator,
    Deadline,
    needs_arbitration,
)
from app.domain.convergence.aggregator import ConvergenceAggregator
from app.domain.convergence.entities import (
    FEATURES_BY_TYPE,
    AdjudicationRecord,
    Caller,
    ConvergenceAssessment,
    Entity,
    EntityType,
    InstrumentFeatures,
    PipelineResult,
    TransactionFeatures,
)
from app.domain.convergence.errors import (
    ConvergenceDomainError,
    EntityValidationError,
    InternalPipelineError,
    TierDeniedError,
)
from app.domain.convergence.fingerprint import compute_fingerprint
from app.domain.convergence.ports import ResultCachePort
from app.domain.convergence.signal_adapter import normalize_signals
from app.domain.convergence.tier_gate import TierGate

logger = logging.getLogger(__name__)

MAX_ENTITY_ID_LENGTH = 128


def validate_entity(entity: Entity) -> None:
    """Check an entity carries every field the pipeline relies on.

    Raises:
        EntityValidationError: On the first missing or inconsistent field.
    """
    if not isinstance(entity.entity_id, str) or not entity.entity_id.strip():
        raise EntityValidationError("entity_id", "must be a non-empty string")
    if len(entity.entity_id) > MAX_ENTITY_ID_LENGTH:
        raise EntityValidationError("entity_id", f"longer than {MAX_ENTITY_ID_LENGTH}")
    if not isinstance(entity.entity_type, EntityType):
        raise EntityValidationError("entity_type", "must be transaction or instrument")

    expected = FEATURES_BY_TYPE[entity.entity_type]
    if not isinstance(entity.features, expected):
        raise EntityValidationError(
            "features", f"{entity.entity_type.value} requires {expected.__name__}"
        )
    if isinstance(entity.features, TransactionFeatures):
        amount = entity.features.amount
        if not isinstance(amount, (Decimal, int, float)) or not math.isfinite(amount):
            raise EntityValidationError("features.amount", "must be a finite number")
    if isinstance(entity.features, InstrumentFeatures):
        if not entity.features.symbol or not entity.features.symbol.strip():
            raise EntityValidationError("features.symbol", "must be a non-empty string")


class SynthesizeConvergenceUseCase:
    """Orchestrates one convergence synthesis run.

    Sequence: validate -> fingerprint -> cache/dedup -> normalize ->
    assess -> (tier gate -> adjudicate) -> assemble -> cache write.
    """

    def __init__(
        self,
        cache: ResultCachePort,
        aggregator: ConvergenceAggregator,
        tier_gate: TierGate,
        adjudicator: AISynthesisAdjudicator,
        policy: PipelinePolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._cache = cache
        self._aggregator = aggregator
        self._tier_gate = tier_gate
        self._adjudicator = adjudicator
        self._policy = policy or PipelinePolicy()
        self._clock = clock

    async def synthesize(
        self,
        entity: Entity,
        raw_signals: Sequence[Any],
        caller: Caller,
        refresh: bool = False,
    ) -> PipelineResult:
        """Return the adjudicated result for an entity and its signals."""
        outcome = await self.execute(
            SynthesizeCommand(
                entity=entity,
                raw_signals=tuple(raw_signals),
                caller=caller,
                refresh=refresh,
            )
        )
        return outcome.result

    async def execute(self, command: SynthesizeCommand) -> SynthesisOutcome:
        """Run the synthesis use case.

        Args:
            command: Entity, raw signals, caller and refresh flag.

        Returns:
            The pipeline result and whether it came from the cache.

        Raises:
            EntityValidationError: If the entity is malformed.
            InternalPipelineError: If a non-AI stage fails unexpectedly.
        """
        entity = command.entity
        validate_entity(entity)
        if isinstance(command.raw_signals, (str, bytes)):
            raise EntityValidationError("signals", "must be a list of records")
        raw_signals = tuple(command.raw_signals)

        try:
            fingerprint = compute_fingerprint(
                entity.entity_id, entity.entity_type, raw_signals
            )
        except (TypeError, ValueError) as exc:
            raise InternalPipelineError("fingerprint", str(exc)) from exc

        deadline = Deadline(self._policy.budget_seconds)
        lookup = await self._cache.get_or_compute(
            fingerprint,
            lambda: self._run(entity, raw_signals, command.caller, fingerprint, deadline),
            refresh=command.refresh,
        )
        if lookup.cache_hit:
            logger.info(
                "Cache hit for %s (age=%.0fs, fingerprint=%s)",
                entity.entity_id,
                lookup.age_seconds,
                fingerprint[:12],
            )
        return SynthesisOutcome(
            result=lookup.result,
            cache_hit=lookup.cache_hit,
            cache_age_seconds=lookup.age_seconds,
        )

    async def _run(
        self,
        entity: Entity,
        raw_signals: tuple[Any, ...],
        caller: Caller,
        fingerprint: str,
        deadline: Deadline,
    ) -> PipelineResult:
        try:
            return await self._pipeline(entity, raw_signals, caller, fingerprint, deadline)
        except ConvergenceDomainError:
            raise
        except Exception as exc:
            logger.exception("Convergence pipeline failed for %s", entity.entity_id)
            raise InternalPipelineError("pipeline", type(exc).__name__) from exc

    async def _pipeline(
        self,
        entity: Entity,
        raw_signals: tuple[Any, ...],
        caller: Caller,
        fingerprint: str,
        deadline: Deadline,
    ) -> PipelineResult:
        started = time.monotonic()
        batch = normalize_signals(entity.entity_type, raw_signals)
        assessment = self._aggregator.assess(batch.signals)
        logger.info(
            "Assessed %s %s: status=%s candidate=%s share=%.2f (signals=%d, dropped=%d)",
            entity.entity_type.value,
            entity.entity_id,
            assessment.status.value,
            assessment.candidate_label,
            assessment.aggregate_confidence,
            len(batch.signals),
            len(batch.rejected),
        )

        record: Optional[AdjudicationRecord] = None
        degradation_reason: Optional[str] = None
        if needs_arbitration(assessment, self._policy.arbitration_confidence_floor):
            try:
                await self._tier_gate.authorize(caller, timeout=deadline.remaining())
            except TierDeniedError as exc:
                logger.info("Arbitration skipped for %s: %s", entity.entity_id, exc.message)
                degradation_reason = f"tier_denied: {exc.reason}"
            else:
                record = await self._adjudicator.adjudicate(
                    entity, batch.signals, assessment, deadline
                )
                if record.degraded:
                    degradation_reason = f"ai_unavailable: {record.error}"

        result = self._assemble(
            entity,
            assessment,
            record,
            fingerprint,
            degradation_reason,
            rejected=len(batch.rejected),
            pipeline_ms=round((time.monotonic() - started) * 1000, 2),
        )
        logger.info(
            "Synthesized %s -> %s (arbitration=%s, degraded=%s) in %.0fms",
            entity.entity_id,
            result.final_label,
            result.used_arbitration,
            result.degraded,
            result.pipeline_ms,
        )
        return result

    def _assemble(
        self,
        entity: Entity,
        assessment: ConvergenceAssessment,
        record: Optional[AdjudicationRecord],
        fingerprint: str,
        degradation_reason: Optional[str],
        rejected: int,
        pipeline_ms: float,
    ) -> PipelineResult:
        final_label = assessment.candidate_label
        confidence = assessment.effective_confidence
        if record is not None and not record.degraded:
            final_label = record.final_label
            if record.confidence is not None:
                confidence = record.confidence
        if final_label is None:
            final_label = self._policy.fallback_labels.get(entity.entity_type)

        return PipelineResult(
            entity_id=entity.entity_id,
            entity_type=entity.entity_type,
            final_label=final_label,
            confidence=confidence,
            status=assessment.status,
            used_arbitration=record is not None,
            degraded=degradation_reason is not None,
            fingerprint=fingerprint,
            created_at=self._clock(),
            assessment=assessment,
            adjudication=record,
            degradation_reason=degradation_reason,
            rejected_signals=rejected,
            pipeline_ms=pipeline_ms,
        )
