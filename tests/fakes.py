"""
In-memory fakes for the convergence ports and small builders for test data.

No network, no database. Every fake records how it was called.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from app.application.convergence.dtos import PipelinePolicy
from app.application.convergence.synthesize import SynthesizeConvergenceUseCase
from app.domain.convergence.adjudicator import AdjudicationPolicy, AISynthesisAdjudicator
from app.domain.convergence.aggregator import ConvergenceAggregator
from app.domain.convergence.entities import (
    AdjudicationPrompts,
    Caller,
    ConvergenceAssessment,
    ConvergenceStatus,
    Entity,
    EntityType,
    InstrumentFeatures,
    ModelCompletion,
    PipelineResult,
    TransactionFeatures,
)
from app.domain.convergence.errors import AIServiceError
from app.domain.convergence.ports import GenerativeModelPort, PromptRepository, TierRepository
from app.domain.convergence.tier_gate import TierGate
from app.infrastructure.convergence.result_cache import InMemoryResultCache

FIXED_NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeModel(GenerativeModelPort):
    """Scripted generative model.

    Replies are consumed in order; the last one repeats. A reply that is an
    exception instance is raised instead of returned.
    """

    def __init__(
        self,
        replies: Sequence[Any] = (),
        delay: float = 0.0,
        name: str = "fake/arbiter",
    ) -> None:
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self._name = name

    @property
    def model_name(self) -> str:
        return self._name

    async def complete(
        self, system_prompt: str, user_prompt: str, timeout: float
    ) -> ModelCompletion:
        self.calls.append({"system": system_prompt, "user": user_prompt, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.replies:
            raise AIServiceError("no reply scripted")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return ModelCompletion(text=reply, model=self._name, prompt_tokens=120, completion_tokens=30)

    async def aclose(self) -> None:
        self.closed = True


class FakeTierRepository(TierRepository):
    """Tier store backed by dicts."""

    def __init__(
        self,
        tiers: Optional[dict[str, Optional[str]]] = None,
        fail: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.tiers = dict(tiers or {})
        self.used: dict[tuple[str, str], int] = {}
        self.fail = fail
        self.delay = delay
        self.consume_calls: list[tuple[str, str, int]] = []

    async def get_tier(self, user_id: str) -> Optional[str]:
        if user_id not in self.tiers:
            return None
        return self.tiers[user_id] or "free"

    async def consume_arbitration_quota(self, user_id: str, period: str, limit: int) -> bool:
        self.consume_calls.append((user_id, period, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("quota store is down")
        key = (user_id, period)
        if self.used.get(key, 0) >= limit:
            return False
        self.used[key] = self.used.get(key, 0) + 1
        return True


class StaticPrompts(PromptRepository):
    """Prompt repository returning one fixed template for every entity type."""

    def __init__(
        self,
        system: str = "Pick one label. Reply with JSON.",
        user_template: str = (
            "{entity_type}\n{entity}\n\nSignals:\n{signals}\n\n"
            "status={status} candidate={candidate} labels={labels}"
        ),
    ) -> None:
        self.prompts = AdjudicationPrompts(system=system, user_template=user_template)

    def get_prompts(self, entity_type: EntityType) -> AdjudicationPrompts:
        return self.prompts


async def no_sleep(_seconds: float) -> None:
    return None


def reply(label: str, confidence: float = 0.8, rationale: str = "matches merchant history") -> str:
    return (
        '{"label": "%s", "rationale": "%s", "confidence": %s}'
        % (label, rationale, confidence)
    )


def transaction(entity_id: str = "txn-1001", amount: str = "-4.75") -> Entity:
    return Entity(
        entity_id=entity_id,
        entity_type=EntityType.TRANSACTION,
        features=TransactionFeatures(
            amount=Decimal(amount),
            merchant_name="Blue Bottle Coffee",
            description="BLUE BOTTLE COFFEE #12 OAKLAND CA",
            category_primary="FOOD_AND_DRINK",
        ),
    )


def instrument(entity_id: str = "inst-AAPL", symbol: str = "AAPL") -> Entity:
    return Entity(
        entity_id=entity_id,
        entity_type=EntityType.INSTRUMENT,
        features=InstrumentFeatures(
            symbol=symbol,
            last_price=Decimal("189.20"),
            sector="Technology",
            indicators={"vol_edge": 71.0, "quality": 64.5},
        ),
    )


def caller(tier: Optional[str] = "pro_plus", user_id: str = "ada@example.com") -> Caller:
    return Caller(user_id=user_id, tier=tier)


def rules(label: str, confidence: float, **extra: Any) -> dict[str, Any]:
    return {"source": "rules", "suggestedCoaCode": label, "confidence": confidence, **extra}


def stats(label: str, probability: float, **extra: Any) -> dict[str, Any]:
    return {"source": "stats", "predicted_label": label, "probability": probability, **extra}


def pipeline_result(
    label: Optional[str] = "P-500",
    degraded: bool = False,
    fingerprint: str = "f" * 64,
) -> PipelineResult:
    return PipelineResult(
        entity_id="txn-1001",
        entity_type=EntityType.TRANSACTION,
        final_label=label,
        confidence=0.9,
        status=ConvergenceStatus.AGREED,
        used_arbitration=False,
        degraded=degraded,
        fingerprint=fingerprint,
        created_at=FIXED_NOW,
        assessment=ConvergenceAssessment(
            status=ConvergenceStatus.AGREED,
            candidate_label=label,
            aggregate_confidence=1.0,
        ),
    )


def build_use_case(
    model: Optional[FakeModel] = None,
    tier_repo: Optional[FakeTierRepository] = None,
    cache: Optional[InMemoryResultCache] = None,
    monthly_quota: int = 500,
    adjudication_policy: Optional[AdjudicationPolicy] = None,
    pipeline_policy: Optional[PipelinePolicy] = None,
) -> SynthesizeConvergenceUseCase:
    """Wire the real use case around fakes."""
    adjudicator = AISynthesisAdjudicator(
        model=model or FakeModel(),
        prompts=StaticPrompts(),
        policy=adjudication_policy or AdjudicationPolicy(),
        sleep=no_sleep,
    )
    return SynthesizeConvergenceUseCase(
        cache=cache if cache is not None else InMemoryResultCache(),
        aggregator=ConvergenceAggregator(),
        tier_gate=TierGate(
            tier_repo if tier_repo is not None else FakeTierRepository(),
            monthly_quota,
            clock=lambda: FIXED_NOW,
        ),
        adjudicator=adjudicator,
        policy=pipeline_policy
        or PipelinePolicy(
            fallback_labels={EntityType.TRANSACTION: "P-8900", EntityType.INSTRUMENT: None}
        ),
        clock=lambda: FIXED_NOW,
    )
