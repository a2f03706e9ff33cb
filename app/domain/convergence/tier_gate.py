"""
Tier gate for the AI arbitration stage.

A pure policy check: decides whether a caller may spend an AI arbitration.
Reads entitlements from the tier table and consumes quota through the
TierRepository port. Never touches entity or signal data.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from app.domain.convergence.entities import Caller
from app.domain.convergence.errors import TierDeniedError
from app.domain.convergence.ports import TierRepository
from app.domain.convergence.tiers import Feature, get_tier_config, normalize_tier

logger = logging.getLogger(__name__)


def billing_period(moment: datetime) -> str:
    """Return the calendar-month billing period key (UTC) for a moment."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


class TierGate:
    """Authorizes AI arbitration per caller tier and monthly quota.

    Args:
        tier_repo: Store holding quota consumption.
        monthly_quota: Arbitrations allowed per entitled caller per month.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        tier_repo: TierRepository,
        monthly_quota: int,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._tier_repo = tier_repo
        self._monthly_quota = monthly_quota
        self._clock = clock

    async def authorize(self, caller: Caller, timeout: Optional[float] = None) -> None:
        """Consume one arbitration for the caller or refuse.

        Args:
            caller: Verified identity and tier of the requester.
            timeout: Seconds allowed for the quota store; None waits.

        Raises:
            TierDeniedError: If the tier lacks the entitlement, the quota is
                exhausted, or the quota store cannot be reached in time.
        """
        tier = normalize_tier(caller.tier)
        if not get_tier_config(caller.tier).allows(Feature.AI_ARBITRATION):
            raise TierDeniedError(tier.value, "tier lacks AI arbitration")
        if self._monthly_quota <= 0:
            raise TierDeniedError(tier.value, "no arbitration quota configured")

        period = billing_period(self._clock())
        try:
            consumed = await asyncio.wait_for(
                self._tier_repo.consume_arbitration_quota(
                    caller.user_id, period, self._monthly_quota
                ),
                timeout=None if timeout is None else max(timeout, 0.0),
            )
        except asyncio.TimeoutError as exc:
            logger.error("Quota store timed out for period %s after %.1fs", period, timeout)
            raise TierDeniedError(tier.value, "quota store unavailable") from exc
        except Exception as exc:
            logger.error("Quota store unavailable for period %s: %s", period, exc)
            raise TierDeniedError(tier.value, "quota store unavailable") from exc

        if not consumed:
            raise TierDeniedError(
                tier.value,
                f"monthly quota of {self._monthly_quota} exhausted for {period}",
            )
        logger.info("Arbitration authorized for tier=%s period=%s", tier.value, period)
