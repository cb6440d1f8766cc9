"""
Credit Pack Catalog Service.

The overage bundles on sale. Operators edit packs; the payment integration
grants them by key.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.credit_pack import CreditPack

logger = logging.getLogger(__name__)


class CreditPackCatalog:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, pack_key: str) -> Optional[Dict[str, Any]]:
        """An active pack by key, or None."""
        async def _load(session: AsyncSession) -> Optional[Dict[str, Any]]:
            result = await session.execute(
                select(CreditPack).where(CreditPack.pack_key == pack_key, CreditPack.is_active == True)
            )
            row = result.scalar_one_or_none()
            return _serialize(row) if row is not None else None

        return await run_in_transaction(self.session_factory, _load)

    async def list_active(self) -> List[Dict[str, Any]]:
        """Active packs, smallest first."""
        return [pack for pack in await self.list_all() if pack["is_active"]]

    async def list_all(self) -> List[Dict[str, Any]]:
        async def _load(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(
                select(CreditPack).order_by(CreditPack.credits, CreditPack.pack_key)
            )
            return [_serialize(row) for row in result.scalars().all()]

        return await run_in_transaction(self.session_factory, _load)

    async def upsert(
        self,
        pack_key: str,
        credits: Optional[int] = None,
        name: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Create a pack or overwrite fields of an existing one.

        Raises:
            ValueError: If credits is not positive, or a new pack has no credits
        """
        if credits is not None and int(credits) <= 0:
            raise ValueError("Pack credits must be positive")

        async def _upsert(session: AsyncSession) -> Dict[str, Any]:
            result = await session.execute(select(CreditPack).where(CreditPack.pack_key == pack_key))
            row = result.scalar_one_or_none()
            if row is None:
                if credits is None:
                    raise ValueError(f"New pack '{pack_key}' needs a credit amount")
                row = CreditPack(
                    pack_key=pack_key,
                    credits=int(credits),
                    name=name or f"{int(credits):,} Credits",
                    is_active=True if is_active is None else bool(is_active),
                )
                session.add(row)
            else:
                if credits is not None:
                    row.credits = int(credits)
                if name is not None:
                    row.name = name
                if is_active is not None:
                    row.is_active = bool(is_active)
            await session.flush()
            return _serialize(row)

        saved = await run_in_transaction(self.session_factory, _upsert)
        logger.info("Credit pack saved", extra={"pack_key": pack_key})
        return saved


def _serialize(row: CreditPack) -> Dict[str, Any]:
    return {
        "pack_key": row.pack_key,
        "name": row.name,
        "credits": row.credits,
        "is_active": row.is_active,
    }
