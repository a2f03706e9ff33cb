"""
Signal source adapter.

Normalizes heterogeneous upstream prediction records into Signal entities.
Each upstream source has its own record shape, selected by the record's
``source`` tag:

    rules        auto-categorization suggestions (merchant history, category defaults)
    stats        statistical predictor output
    review       human review log entries
    convergence  trading composite scores (0-100)
    <other>      generic {label, confidence, rationale, produced_at}

A malformed record is dropped and logged; it never aborts the batch.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

from dateutil import parser as dateparser

from app.domain.convergence.entities import EntityType, Signal
from app.domain.convergence.errors import MalformedSignalError
from app.domain.convergence.fingerprint import canonical_json

logger = logging.getLogger(__name__)

SOURCE_KEYS = ("source", "source_id", "sourceId")
HUMAN_REVIEW_CONFIDENCE = 1.0


@dataclass(frozen=True)
class NormalizedSignals:
    """Signals that survived normalization plus the rejected records."""

    signals: list[Signal] = field(default_factory=list)
    rejected: list[MalformedSignalError] = field(default_factory=list)


def normalize_label(entity_type: EntityType, raw: Any) -> str:
    """Canonicalize a label for comparison within one entity type.

    Chart-of-accounts codes are upper-cased; instrument signals are
    lower-cased. Surrounding whitespace is always removed.

    Raises:
        ValueError: If the label is missing or blank.
    """
    if raw is None or isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ValueError("label is missing")
    text = str(raw).strip()
    if not text:
        raise ValueError("label is blank")
    if entity_type is EntityType.TRANSACTION:
        return text.upper()
    return text.lower()


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _confidence(value: Any) -> float:
    if value is None:
        raise ValueError("confidence is missing")
    if isinstance(value, bool):
        raise ValueError("confidence must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"confidence {value!r} is not numeric") from None
    if math.isnan(number) or not 0.0 <= number <= 1.0:
        raise ValueError(f"confidence {number} outside [0, 1]")
    return number


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = dateparser.isoparse(str(value))
        except (ValueError, OverflowError):
            raise ValueError(f"timestamp {value!r} is not ISO-8601") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ------------------------------------------------------------------
# Per-source parsers
# ------------------------------------------------------------------


def _parse_rules(
    source: str, entity_type: EntityType, record: Mapping[str, Any]
) -> Signal:
    return Signal(
        source_id=source,
        label=normalize_label(
            entity_type,
            _first(record, "suggestedCoaCode", "suggested_coa_code", "label"),
        ),
        confidence=_confidence(record.get("confidence")),
        rationale=_text(_first(record, "reason", "rationale")),
        produced_at=_timestamp(_first(record, "produced_at", "producedAt")),
    )


def _parse_stats(
    source: str, entity_type: EntityType, record: Mapping[str, Any]
) -> Signal:
    model = _text(record.get("model"))
    rationale = _text(record.get("rationale"))
    if rationale is None and model is not None:
        rationale = f"predicted by {model}"
    return Signal(
        source_id=source,
        label=normalize_label(entity_type, _first(record, "predicted_label", "label")),
        confidence=_confidence(_first(record, "probability", "confidence")),
        rationale=rationale,
        produced_at=_timestamp(_first(record, "produced_at", "producedAt")),
    )


def _parse_review(
    source: str, entity_type: EntityType, record: Mapping[str, Any]
) -> Signal:
    reviewer = _text(record.get("reviewer"))
    note = _text(_first(record, "note", "rationale"))
    if note is None and reviewer is not None:
        note = f"reviewed by {reviewer}"
    confidence = record.get("confidence")
    return Signal(
        source_id=source,
        label=normalize_label(entity_type, _first(record, "coa_code", "coaCode", "label")),
        confidence=HUMAN_REVIEW_CONFIDENCE if confidence is None else _confidence(confidence),
        rationale=note,
        produced_at=_timestamp(_first(record, "reviewed_at", "reviewedAt", "produced_at")),
    )


def _parse_convergence(
    source: str, entity_type: EntityType, record: Mapping[str, Any]
) -> Signal:
    composite = record.get("composite")
    if composite is not None and not isinstance(composite, bool):
        try:
            confidence = _confidence(float(composite) / 100.0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"composite {composite!r} invalid: {exc}") from None
    else:
        confidence = _confidence(record.get("confidence"))
    strategy = _text(record.get("strategy"))
    rationale = _text(record.get("rationale"))
    if rationale is None and strategy is not None:
        rationale = f"suggested strategy: {strategy}"
    return Signal(
        source_id=source,
        label=normalize_label(entity_type, _first(record, "direction", "label")),
        confidence=confidence,
        rationale=rationale,
        produced_at=_timestamp(_first(record, "produced_at", "scored_at")),
    )


def _parse_generic(
    source: str, entity_type: EntityType, record: Mapping[str, Any]
) -> Signal:
    return Signal(
        source_id=source,
        label=normalize_label(entity_type, record.get("label")),
        confidence=_confidence(record.get("confidence")),
        rationale=_text(record.get("rationale")),
        produced_at=_timestamp(_first(record, "produced_at", "producedAt")),
    )


SignalParser = Callable[[str, EntityType, Mapping[str, Any]], Signal]

SOURCE_PARSERS: dict[str, SignalParser] = {
    "rules": _parse_rules,
    "stats": _parse_stats,
    "review": _parse_review,
    "convergence": _parse_convergence,
}


def normalize_signal(entity_type: EntityType, record: Any) -> Signal:
    """Normalize one upstream record.

    Raises:
        MalformedSignalError: If the record cannot be turned into a Signal.
    """
    if not isinstance(record, Mapping):
        raise MalformedSignalError("unknown", "record is not an object")
    source = _text(_first(record, *SOURCE_KEYS))
    if source is None:
        raise MalformedSignalError("unknown", "source is missing")
    parser = SOURCE_PARSERS.get(source.lower(), _parse_generic)
    try:
        return parser(source, entity_type, record)
    except ValueError as exc:
        raise MalformedSignalError(source, str(exc)) from exc


def _precedence(candidate: tuple[Signal, str]) -> tuple[float, str]:
    signal, canonical = candidate
    produced = signal.produced_at.timestamp() if signal.produced_at else float("-inf")
    return -produced, canonical


def normalize_signals(
    entity_type: EntityType, records: Iterable[Any]
) -> NormalizedSignals:
    """Normalize a batch of upstream records, ordered by source.

    Records that fail normalization are dropped and logged. When several
    records share a source, the most recently produced one is kept (ties
    go to the smallest canonical record) and the rest are dropped, so the
    batch never depends on arrival order.
    """
    batch = NormalizedSignals()
    by_source: dict[str, list[tuple[Signal, str]]] = {}
    for record in records:
        try:
            signal = normalize_signal(entity_type, record)
        except MalformedSignalError as exc:
            _reject(batch, exc)
            continue
        by_source.setdefault(signal.source_id, []).append((signal, canonical_json(record)))

    for source in sorted(by_source):
        ranked = sorted(by_source[source], key=_precedence)
        batch.signals.append(ranked[0][0])
        for _ in ranked[1:]:
            _reject(batch, MalformedSignalError(source, "duplicate source"))
    return batch


def _reject(batch: NormalizedSignals, exc: MalformedSignalError) -> None:
    logger.warning("Dropping signal: %s", exc.message)
    batch.rejected.append(exc)
