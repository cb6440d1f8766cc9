"""
Overage credit purchases.

Entry points for the payment integration once a checkout has been
verified upstream. Packs are operator-managed bundles; arbitrary amounts go
through `grant_overage_credits`.
"""

import logging
from typing import Any, Dict, List, Optional

from credit_ledger.app.core.exceptions import UnknownPackError
from credit_ledger.app.domain.credits.spend_engine import SpendEngine
from credit_ledger.app.services.pack_catalog import CreditPackCatalog

logger = logging.getLogger(__name__)


class OverageService:

    def __init__(self, engine: SpendEngine, packs: CreditPackCatalog):
        self.engine = engine
        self.packs = packs

    async def list_packs(self) -> List[Dict[str, Any]]:
        """Packs currently on sale."""
        return await self.packs.list_active()

    async def list_all_packs(self) -> List[Dict[str, Any]]:
        return await self.packs.list_all()

    async def save_pack(
        self,
        pack_key: str,
        credits: Optional[int] = None,
        name: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        return await self.packs.upsert(pack_key, credits=credits, name=name, is_active=is_active)

    async def grant_overage_credits(
        self,
        account_id: int,
        credits: int,
        reference_metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.engine.grant_overage(account_id, credits, reference_metadata)

    async def grant_credit_pack(
        self,
        account_id: int,
        pack_key: str,
        reference_metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Grant a purchased credit pack.

        Raises:
            UnknownPackError: If the pack key is not configured or inactive
        """
        pack = await self.packs.get(pack_key)
        if pack is None:
            raise UnknownPackError(pack_key)

        metadata = {**(reference_metadata or {}), "pack_key": pack_key}
        logger.info("Granting credit pack", extra={"account_id": account_id, "pack_key": pack_key})
        return await self.engine.grant_overage(account_id, int(pack["credits"]), metadata)
