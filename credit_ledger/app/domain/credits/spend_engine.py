"""
Spend Engine (Domain Logic).

Decides affordability and draws credits down across the three buckets.
Each mutation is one transaction: compare-and-set on the allocation plus
exactly one ledger entry.

Draw order: allowance -> rollover -> overage (most perishable first).
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_enums import ActionType, SourceType
from credit_ledger.app.services import ledger
from credit_ledger.app.services.action_catalog import ActionCatalog
from credit_ledger.app.services.allocation_store import AllocationStore, serialize_allocation
from credit_ledger.app.services.events import CreditEvent, EventBus, EventName

logger = logging.getLogger(__name__)

REASON_INSUFFICIENT = "insufficient_credits"
REASON_HARD_CAP = "hard_cap_reached"


@dataclass
class Affordability:
    allowed: bool
    cost: int
    total: int = 0
    reason: Optional[str] = None
    refill_date: Optional[date] = None
    tier: Optional[str] = None
    balance: Dict[str, Any] = field(default_factory=dict)

    @property
    def shortfall(self) -> int:
        return max(0, self.cost - self.total)


@dataclass(frozen=True)
class Draw:
    from_allowance: int
    from_rollover: int
    from_overage: int
    unsatisfied: int

    @property
    def source_type(self) -> SourceType:
        """
        Allowance whenever the allowance bucket was touched; otherwise the
        first bucket that supplied credits.
        """
        if self.from_allowance > 0:
            return SourceType.ALLOWANCE
        if self.from_rollover > 0:
            return SourceType.ROLLOVER
        if self.from_overage > 0:
            return SourceType.OVERAGE
        return SourceType.ALLOWANCE


def plan_draw(cost: int, allowance: int, rollover: int, overage: int) -> Draw:
    """Greedy draw across the buckets in perishability order."""
    remaining = cost
    taken = []
    for bucket in (allowance, rollover, overage):
        take = min(remaining, bucket) if remaining > 0 and bucket > 0 else 0
        taken.append(take)
        remaining -= take
    return Draw(taken[0], taken[1], taken[2], remaining)


def evaluate(allocation: Allocation, cost: int) -> Affordability:
    """Affordability of `cost` against an allocation snapshot."""
    total = allocation.total_balance
    common = dict(
        cost=cost,
        total=total,
        refill_date=allocation.billing_cycle_end,
        tier=allocation.tier,
        balance=serialize_allocation(allocation),
    )
    if cost <= 0:
        return Affordability(allowed=True, **common)
    if allocation.hard_cap > 0 and total <= 0:
        return Affordability(allowed=False, reason=REASON_HARD_CAP, **common)
    if total < cost:
        return Affordability(allowed=False, reason=REASON_INSUFFICIENT, **common)
    return Affordability(allowed=True, **common)


class SpendEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: AllocationStore,
        catalog: ActionCatalog,
        events: Optional[EventBus] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.catalog = catalog
        self.events = events or EventBus()

    async def cost_of(self, action_type: str, units: int = 1) -> int:
        if units < 0:
            raise ValueError("units cannot be negative")
        return await self.catalog.cost(action_type) * units

    async def affordability(self, account_id: int, action_type: str, units: int = 1) -> Affordability:
        """
        Check whether an account can afford `units` of an action.

        Free actions are always allowed and never touch the allocation.
        """
        cost = await self.cost_of(action_type, units)
        if cost <= 0:
            return Affordability(allowed=True, cost=0)

        allocation = await self.store.get_or_create(account_id)
        return evaluate(allocation, cost)

    async def spend(
        self,
        account_id: int,
        action_type: str,
        units: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Spend credits for an action.

        Affordability is re-checked against a fresh read inside the write
        transaction; state may have moved since the caller's check.

        Returns:
            True if spent (or free), False if the account cannot afford it

        Raises:
            StaleAllocationError: If a concurrent writer changed the allocation
        """
        cost = await self.cost_of(action_type, units)
        if cost <= 0:
            return True

        await self.store.get_or_create(account_id)
        metadata = dict(metadata or {})

        async def _spend(session: AsyncSession):
            allocation = await self.store.require(session, account_id)
            if not evaluate(allocation, cost).allowed:
                return None

            draw = plan_draw(
                cost,
                allocation.current_balance,
                allocation.rollover_balance,
                allocation.overage_balance,
            )
            if draw.unsatisfied > 0:
                logger.error(
                    "Draw-down left credits unsatisfied",
                    extra={"account_id": account_id, "cost": cost, "unsatisfied": draw.unsatisfied},
                )
                return None

            await self.store.compare_and_set(
                session,
                allocation,
                current_balance=allocation.current_balance - draw.from_allowance,
                rollover_balance=allocation.rollover_balance - draw.from_rollover,
                overage_balance=allocation.overage_balance - draw.from_overage,
            )
            await ledger.append_entry(
                session,
                allocation,
                action_type=action_type,
                credits_used=cost,
                source_type=draw.source_type,
                metadata={
                    **metadata,
                    "units": units,
                    "from_allowance": draw.from_allowance,
                    "from_rollover": draw.from_rollover,
                    "from_overage": draw.from_overage,
                },
                reference_id=metadata.get("reference_id"),
                reference_type=metadata.get("reference_type"),
            )
            return allocation.total_balance, draw

        outcome = await run_in_transaction(self.session_factory, _spend)
        if outcome is None:
            logger.info(
                "Spend refused",
                extra={"account_id": account_id, "action_type": action_type, "cost": cost},
            )
            return False

        balance_after, draw = outcome
        await self.events.publish(CreditEvent(
            name=EventName.CREDITS_SPENT,
            account_id=account_id,
            payload={
                "action_type": action_type,
                "cost": cost,
                "balance_after": balance_after,
                "source_type": draw.source_type.value,
            },
        ))
        return True

    async def grant_overage(
        self,
        account_id: int,
        credits: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Add purchased credits to the overage bucket.

        The caller has already verified the purchase; no verification here.
        """
        if credits <= 0:
            raise ValueError("credits must be greater than 0")

        await self.store.get_or_create(account_id)
        metadata = dict(metadata or {})

        async def _grant(session: AsyncSession) -> int:
            allocation = await self.store.require(session, account_id)
            await self.store.compare_and_set(
                session,
                allocation,
                overage_balance=allocation.overage_balance + credits,
            )
            await ledger.append_entry(
                session,
                allocation,
                action_type=ActionType.OVERAGE_PURCHASE,
                credits_used=-credits,
                source_type=SourceType.OVERAGE,
                metadata=metadata,
                reference_id=metadata.get("reference_id"),
                reference_type=metadata.get("reference_type", "payment_checkout"),
            )
            return allocation.total_balance

        balance_after = await run_in_transaction(self.session_factory, _grant)
        logger.info("Overage credits granted", extra={"account_id": account_id, "credits": credits})
        await self.events.publish(CreditEvent(
            name=EventName.OVERAGE_GRANTED,
            account_id=account_id,
            payload={"credits": credits, "balance_after": balance_after},
        ))
        return True

    async def adjust_balance(
        self,
        account_id: int,
        amount: int,
        reason: str = "",
        operator: Optional[str] = None,
    ) -> Allocation:
        """
        Manually adjust the allowance bucket (operator override).

        Removals floor at zero; the ledger records the amount actually applied.
        Draw order is not involved: only `current_balance` changes.
        """
        if amount == 0:
            raise ValueError("amount must be non-zero")

        await self.store.get_or_create(account_id)

        async def _adjust(session: AsyncSession) -> Allocation:
            allocation = await self.store.require(session, account_id)
            previous = allocation.current_balance
            new_balance = max(0, previous + amount)
            await self.store.compare_and_set(session, allocation, current_balance=new_balance)
            await ledger.append_entry(
                session,
                allocation,
                action_type=ActionType.ADMIN_ADJUSTMENT,
                credits_used=-(new_balance - previous),
                source_type=SourceType.ADJUSTMENT,
                metadata={
                    "reason": reason,
                    "operator": operator,
                    "requested_amount": amount,
                    "previous_balance": previous,
                },
                reference_id=operator,
                reference_type="operator",
            )
            return allocation

        allocation = await run_in_transaction(self.session_factory, _adjust)
        logger.info(
            "Balance adjusted",
            extra={"account_id": account_id, "amount": amount, "operator": operator},
        )
        await self.events.publish(CreditEvent(
            name=EventName.BALANCE_ADJUSTED,
            account_id=account_id,
            payload={"amount": amount, "balance_after": allocation.total_balance},
        ))
        return allocation
