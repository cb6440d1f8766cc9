"""
Plan Tier Catalog Service.

Maps billing plan names from the payment integration onto tiers.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.core.config import settings
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.credit_enums import BillingPeriod
from credit_ledger.app.models.plan_tier import PlanTierMapping
from credit_ledger.app.services.cache import TTLCache

logger = logging.getLogger(__name__)

_PLAN_MAP_KEY = "plan_tier_map"


def normalize_plan(plan: Optional[str]) -> str:
    return (plan or "").strip().lower()


class PlanTierCatalog:

    def __init__(self, session_factory: async_sessionmaker, cache_ttl_seconds: float = None):
        self.session_factory = session_factory
        ttl = settings.catalog_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        self._cache = TTLCache(ttl_seconds=ttl)

    async def as_map(self) -> Dict[str, Dict[str, str]]:
        """Plan name -> {tier, billing_period}, in insertion order."""
        cached = self._cache.get(_PLAN_MAP_KEY)
        if cached is not None:
            return cached

        mapping = {row["plan"]: row for row in await self.list_all()}
        self._cache.set(_PLAN_MAP_KEY, mapping)
        return mapping

    async def list_all(self) -> List[Dict[str, Any]]:
        async def _load(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(select(PlanTierMapping).order_by(PlanTierMapping.id))
            return [_serialize(row) for row in result.scalars().all()]

        return await run_in_transaction(self.session_factory, _load)

    async def upsert(self, plan: str, tier: str, billing_period: BillingPeriod = BillingPeriod.MONTHLY) -> Dict[str, Any]:
        """
        Create or overwrite the mapping for a plan.

        Raises:
            ValueError: If the plan name is blank
        """
        key = normalize_plan(plan)
        if not key:
            raise ValueError("Plan name must not be blank")
        period = BillingPeriod(billing_period).value

        async def _upsert(session: AsyncSession) -> Dict[str, Any]:
            result = await session.execute(select(PlanTierMapping).where(PlanTierMapping.plan == key))
            row = result.scalar_one_or_none()
            if row is None:
                row = PlanTierMapping(plan=key, tier=tier, billing_period=period)
                session.add(row)
            else:
                row.tier = tier
                row.billing_period = period
            await session.flush()
            return _serialize(row)

        saved = await run_in_transaction(self.session_factory, _upsert)
        self._cache.invalidate()
        logger.info("Plan tier mapping saved", extra={"plan": key, "tier": tier})
        return saved

    async def remove(self, plan: str) -> bool:
        key = normalize_plan(plan)

        async def _remove(session: AsyncSession) -> bool:
            result = await session.execute(select(PlanTierMapping).where(PlanTierMapping.plan == key))
            row = result.scalar_one_or_none()
            if row is None:
                return False
            await session.delete(row)
            return True

        removed = await run_in_transaction(self.session_factory, _remove)
        self._cache.invalidate()
        return removed


def _serialize(row: PlanTierMapping) -> Dict[str, Any]:
    return {
        "plan": row.plan,
        "tier": row.tier,
        "billing_period": row.billing_period,
    }
