"""
Credit Gate.

Pre-action check and post-action commit for credit-consuming features.

The gate fails open: while the ledger schema is not provisioned, checks
allow everything and commits record nothing. Unlimited tiers bypass the
ledger entirely.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from credit_ledger.app.core.exceptions import (
    CreditError,
    HardCapReachedError,
    InsufficientCreditsError,
    StaleAllocationError,
)
from credit_ledger.app.db.provisioning import ProvisioningStatus, SchemaProvisioner
from credit_ledger.app.domain.credits.spend_engine import REASON_HARD_CAP, SpendEngine

logger = logging.getLogger(__name__)

BYPASS_NOT_PROVISIONED = "not_provisioned"
BYPASS_UNLIMITED = "unlimited"
BYPASS_FREE_ACTION = "free_action"


@dataclass
class GateDecision:
    allowed: bool
    cost: int = 0
    error: Optional[CreditError] = None
    bypass_reason: Optional[str] = None

    def raise_for_denial(self) -> None:
        if not self.allowed and self.error is not None:
            raise self.error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "cost": self.cost,
            "bypass_reason": self.bypass_reason,
            "error_code": self.error.error_code if self.error else None,
            "details": self.error.details if self.error else {},
        }


class CreditGate:

    def __init__(
        self,
        provisioner: SchemaProvisioner,
        engine: SpendEngine,
        tier_resolver,
    ):
        self.provisioner = provisioner
        self.engine = engine
        self.tier_resolver = tier_resolver

    async def _is_provisioned(self) -> bool:
        status = await self.provisioner.status()
        if status is not ProvisioningStatus.PROVISIONED:
            logger.warning("Credit ledger not provisioned; gate open", extra={"provisioning_status": status.value})
            return False
        return True

    async def check(self, account_id: int, action_type: str, units: int = 1) -> GateDecision:
        """
        Decide whether an action may proceed. Never mutates balances.

        Denials carry the error a caller should surface: HardCapReachedError
        when a capped account is empty, InsufficientCreditsError otherwise.
        """
        if not await self._is_provisioned():
            return GateDecision(allowed=True, bypass_reason=BYPASS_NOT_PROVISIONED)

        tier = await self.tier_resolver.resolve_tier(account_id)
        if tier.is_unlimited:
            return GateDecision(allowed=True, bypass_reason=BYPASS_UNLIMITED)

        affordability = await self.engine.affordability(account_id, action_type, units)
        if affordability.cost <= 0:
            return GateDecision(allowed=True, bypass_reason=BYPASS_FREE_ACTION)
        if affordability.allowed:
            return GateDecision(allowed=True, cost=affordability.cost)

        upgrade_target = self.tier_resolver.next_tier_above(affordability.tier)
        if affordability.reason == REASON_HARD_CAP:
            error = HardCapReachedError(
                cost=affordability.cost,
                balance=affordability.balance,
                refill_date=affordability.refill_date,
                upgrade_target=upgrade_target,
            )
        else:
            error = InsufficientCreditsError(
                cost=affordability.cost,
                balance=affordability.balance,
                upgrade_target=upgrade_target,
            )
        return GateDecision(allowed=False, cost=affordability.cost, error=error)

    async def require(self, account_id: int, action_type: str, units: int = 1) -> GateDecision:
        """`check`, raising the denial error instead of returning it."""
        decision = await self.check(account_id, action_type, units)
        decision.raise_for_denial()
        return decision

    async def commit(
        self,
        account_id: int,
        action_type: str,
        units: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record a completed action.

        A lost compare-and-set race is retried once against fresh state.

        Returns:
            True if spent (or nothing needed spending), False if refused or
            the ledger is not provisioned
        """
        if not await self._is_provisioned():
            return False

        tier = await self.tier_resolver.resolve_tier(account_id)
        if tier.is_unlimited:
            return True

        try:
            return await self.engine.spend(account_id, action_type, units, metadata)
        except StaleAllocationError:
            logger.warning(
                "Spend raced another writer; retrying",
                extra={"account_id": account_id, "action_type": action_type},
            )
            return await self.engine.spend(account_id, action_type, units, metadata)
