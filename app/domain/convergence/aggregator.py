"""
Convergence aggregator.

Combines normalized signals into a ConvergenceAssessment.

Algorithm:
    1. Group signals by label; a group's weight is the sum of its confidences.
    2. Rank groups by weight, then by most recent produced_at, then by label.
    3. The top group's share of the total weight decides the status.

Pure function of its input: no IO, no clock, no hidden state.
"""

from dataclasses import dataclass
from typing import Sequence

from app.domain.convergence.entities import (
    ConvergenceAssessment,
    ConvergenceStatus,
    Signal,
)


_EPSILON = 1e-9
_WEIGHT_PRECISION = 9


@dataclass(frozen=True)
class AggregationPolicy:
    """Thresholds that map weight shares onto a status.

    Attributes:
        agreement_threshold: Share at or above which two or more agreeing
            sources count as agreed.
        single_source_threshold: Confidence at or above which a lone
            source counts as agreed.
        tie_margin: Maximum share gap between the top two labels for
            the sequence to count as conflicting.
        min_total_weight: Total weight below which evidence is insufficient.
    """

    agreement_threshold: float = 0.8
    single_source_threshold: float = 0.95
    tie_margin: float = 0.1
    min_total_weight: float = 0.1


@dataclass
class _LabelGroup:
    label: str
    weight: float = 0.0
    support: int = 0
    latest: float = float("-inf")

    def add(self, signal: Signal) -> None:
        self.weight += signal.confidence
        self.support += 1
        if signal.produced_at is not None:
            self.latest = max(self.latest, signal.produced_at.timestamp())

    def rank_key(self) -> tuple[float, float, str]:
        return (-round(self.weight, _WEIGHT_PRECISION), -self.latest, self.label)


class ConvergenceAggregator:
    """Assesses how strongly a signal sequence converges on one label."""

    def __init__(self, policy: AggregationPolicy | None = None) -> None:
        self._policy = policy or AggregationPolicy()

    @property
    def policy(self) -> AggregationPolicy:
        return self._policy

    def assess(self, signals: Sequence[Signal]) -> ConvergenceAssessment:
        """Compute the assessment for one entity's signals.

        Args:
            signals: Normalized signals in arrival order (may be empty).

        Returns:
            The ConvergenceAssessment for the sequence.
        """
        if not signals:
            return ConvergenceAssessment(
                status=ConvergenceStatus.INSUFFICIENT,
                candidate_label=None,
                aggregate_confidence=0.0,
            )

        groups: dict[str, _LabelGroup] = {}
        for signal in signals:
            groups.setdefault(signal.label, _LabelGroup(signal.label)).add(signal)

        ranked = sorted(groups.values(), key=_LabelGroup.rank_key)
        top = ranked[0]
        total = sum(group.weight for group in ranked)
        share = top.weight / total if total > 0 else 0.0
        ranking = tuple((group.label, round(group.weight, 6)) for group in ranked)

        status = self._classify(signals, ranked, total, share)
        return ConvergenceAssessment(
            status=status,
            candidate_label=top.label,
            aggregate_confidence=round(share, 6),
            total_weight=round(total, 6),
            candidate_support=top.support,
            candidate_mean_confidence=round(top.weight / top.support, 6),
            ranking=ranking,
        )

    def _classify(
        self,
        signals: Sequence[Signal],
        ranked: list[_LabelGroup],
        total: float,
        share: float,
    ) -> ConvergenceStatus:
        policy = self._policy
        if total + _EPSILON < policy.min_total_weight:
            return ConvergenceStatus.INSUFFICIENT

        top = ranked[0]
        reaches_agreement = share + _EPSILON >= policy.agreement_threshold
        if reaches_agreement and top.support >= 2:
            return ConvergenceStatus.AGREED
        if (
            len(signals) == 1
            and signals[0].confidence + _EPSILON >= policy.single_source_threshold
        ):
            return ConvergenceStatus.AGREED

        if len(ranked) >= 2 and not reaches_agreement:
            runner_up_share = ranked[1].weight / total
            if share - runner_up_share <= policy.tie_margin + _EPSILON:
                return ConvergenceStatus.CONFLICTING

        return ConvergenceStatus.PARTIAL
