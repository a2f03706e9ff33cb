"""
Adapter: Subscription tier and arbitration quota store.

Implements TierRepository on top of the application's relational database
through a SQLAlchemy async engine:
- users.tier holds each user's subscription tier
- ai_arbitration_usage(user_email, period, used) counts arbitrations per
  billing period; (user_email, period) is unique
"""

import logging
from typing import Optional

from sqlalchemy import text as sql_text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.domain.convergence.ports import TierRepository

logger = logging.getLogger(__name__)

_SELECT_TIER = sql_text(
    """
    SELECT tier
    FROM users
    WHERE lower(email) = lower(:email)
    LIMIT 1
    """
)

_ENSURE_USAGE_ROW = sql_text(
    """
    INSERT INTO ai_arbitration_usage (user_email, period, used)
    VALUES (:email, :period, 0)
    ON CONFLICT (user_email, period) DO NOTHING
    """
)

_CONSUME_ONE = sql_text(
    """
    UPDATE ai_arbitration_usage
    SET used = used + 1
    WHERE user_email = :email AND period = :period AND used < :limit
    RETURNING used
    """
)


def build_async_engine(database_url: str) -> AsyncEngine:
    """Build an async engine, switching plain Postgres URLs to asyncpg."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return create_async_engine(database_url, pool_pre_ping=True, echo=False)


class SqlTierRepository(TierRepository):
    """Concrete adapter reading tiers and metering quota in SQL."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_tier(self, user_id: str) -> Optional[str]:
        """Return the user's tier, "free" when unset, None if unknown."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(_SELECT_TIER, {"email": user_id})).fetchone()
        if row is None:
            return None
        return row[0] or "free"

    async def consume_arbitration_quota(
        self, user_id: str, period: str, limit: int
    ) -> bool:
        """Increment the period counter unless it already reached the limit."""
        params = {"email": user_id.lower(), "period": period, "limit": limit}
        async with self._engine.begin() as conn:
            await conn.execute(_ENSURE_USAGE_ROW, params)
            row = (await conn.execute(_CONSUME_ONE, params)).fetchone()
        if row is None:
            logger.info("Arbitration quota exhausted for period %s", period)
            return False
        return True

    async def dispose(self) -> None:
        await self._engine.dispose()
