"""
Action Cost Catalog Service.

Resolves what a credit-consuming action costs. Unknown and inactive actions
cost nothing, so feature code never fails because an action is missing.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.core.config import settings
from credit_ledger.app.core.exceptions import InvalidActionError
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.action_cost import ActionCost
from credit_ledger.app.services.cache import TTLCache

logger = logging.getLogger(__name__)

_ACTIVE_COSTS_KEY = "active_costs"


class ActionCatalog:

    def __init__(self, session_factory: async_sessionmaker, cache_ttl_seconds: float = None):
        self.session_factory = session_factory
        ttl = settings.catalog_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        self._cache = TTLCache(ttl_seconds=ttl)

    async def _active_costs(self) -> Dict[str, int]:
        cached = self._cache.get(_ACTIVE_COSTS_KEY)
        if cached is not None:
            return cached

        async def _load(session: AsyncSession) -> Dict[str, int]:
            result = await session.execute(
                select(ActionCost.action_type, ActionCost.credits_per_unit).where(
                    ActionCost.is_active == True
                )
            )
            return {action_type: int(credits) for action_type, credits in result.all()}

        costs = await run_in_transaction(self.session_factory, _load)
        self._cache.set(_ACTIVE_COSTS_KEY, costs)
        return costs

    async def cost(self, action_type: str) -> int:
        """
        Credits per unit for an action.

        Returns:
            The configured cost, or 0 when unknown or inactive
        """
        costs = await self._active_costs()
        return max(0, costs.get(action_type, 0))

    async def list_active(self) -> List[Dict[str, Any]]:
        """Active actions ordered by category, most expensive first."""
        async def _load(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(
                select(ActionCost)
                .where(ActionCost.is_active == True)
                .order_by(ActionCost.category, ActionCost.credits_per_unit.desc(), ActionCost.action_type)
            )
            return [_serialize(row) for row in result.scalars().all()]

        return await run_in_transaction(self.session_factory, _load)

    async def list_all(self) -> List[Dict[str, Any]]:
        async def _load(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(
                select(ActionCost).order_by(
                    ActionCost.category, ActionCost.credits_per_unit.desc(), ActionCost.action_type
                )
            )
            return [_serialize(row) for row in result.scalars().all()]

        return await run_in_transaction(self.session_factory, _load)

    async def update(
        self,
        action_type: str,
        credits_per_unit: Optional[int] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Overwrite fields of an existing action cost.

        Raises:
            InvalidActionError: If the action type does not exist
        """
        async def _update(session: AsyncSession) -> Dict[str, Any]:
            result = await session.execute(
                select(ActionCost).where(ActionCost.action_type == action_type)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise InvalidActionError(action_type)

            if credits_per_unit is not None:
                row.credits_per_unit = max(0, int(credits_per_unit))
            if description is not None:
                row.description = description
            if is_active is not None:
                row.is_active = bool(is_active)
            await session.flush()
            return _serialize(row)

        updated = await run_in_transaction(self.session_factory, _update)
        self._cache.invalidate()
        logger.info("Action cost updated", extra={"action_type": action_type})
        return updated


def _serialize(row: ActionCost) -> Dict[str, Any]:
    return {
        "action_type": row.action_type,
        "credits_per_unit": row.credits_per_unit,
        "description": row.description,
        "category": row.category,
        "is_active": row.is_active,
    }
