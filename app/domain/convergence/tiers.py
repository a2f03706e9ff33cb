"""
Subscription tier definitions and feature gating.

Free:      No synthesis access.
Pro:       Bookkeeping synthesis and trading analytics, aggregator-only.
Pro+:      Everything in Pro plus AI arbitration within a monthly quota.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SubscriptionTier(Enum):
    """Known subscription tiers."""

    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "pro_plus"


class Feature(Enum):
    """Entitlements a route or stage may require."""

    BOOKKEEPING_SYNTHESIS = "bookkeeping_synthesis"
    TRADING_ANALYTICS = "trading_analytics"
    AI_ARBITRATION = "ai_arbitration"


@dataclass(frozen=True)
class TierConfig:
    """Entitlements granted by one tier."""

    label: str
    bookkeeping_synthesis: bool
    trading_analytics: bool
    ai_arbitration: bool

    def allows(self, feature: Feature) -> bool:
        return bool(getattr(self, feature.value))


TIER_MAP: dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.FREE: TierConfig(
        label="Free",
        bookkeeping_synthesis=False,
        trading_analytics=False,
        ai_arbitration=False,
    ),
    SubscriptionTier.PRO: TierConfig(
        label="Pro",
        bookkeeping_synthesis=True,
        trading_analytics=True,
        ai_arbitration=False,
    ),
    SubscriptionTier.PRO_PLUS: TierConfig(
        label="Pro+",
        bookkeeping_synthesis=True,
        trading_analytics=True,
        ai_arbitration=True,
    ),
}


def normalize_tier(tier: Optional[str]) -> SubscriptionTier:
    """Map a stored tier string onto a known tier, defaulting to free."""
    normalized = (tier or "free").strip().lower().replace("+", "_plus")
    try:
        return SubscriptionTier(normalized)
    except ValueError:
        return SubscriptionTier.FREE


def get_tier_config(tier: Optional[str]) -> TierConfig:
    """Return the entitlements for a stored tier string."""
    return TIER_MAP[normalize_tier(tier)]


def can_access(tier: Optional[str], feature: Feature) -> bool:
    """Return True if the tier grants the feature."""
    return get_tier_config(tier).allows(feature)
