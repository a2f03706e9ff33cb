"""
Deterministic fingerprint over an entity and its raw signal set.

The fingerprint is the cache and deduplication key. It covers the entity
identity and the raw signal records exactly as submitted; record order
does not matter.
"""

import hashlib
import json
from typing import Any, Iterable

from app.domain.convergence.entities import EntityType


def canonical_json(value: Any) -> str:
    """Serialize a value with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_fingerprint(
    entity_id: str, entity_type: EntityType, raw_signals: Iterable[Any]
) -> str:
    """Return the SHA-256 hex digest identifying one pipeline input."""
    signal_set = sorted(canonical_json(record) for record in raw_signals)
    payload = canonical_json(
        {
            "entity_id": entity_id,
            "entity_type": entity_type.value,
            "signals": signal_set,
        }
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
