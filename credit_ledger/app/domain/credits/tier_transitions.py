"""
Tier Transitions (Domain Logic).

Applies tier upgrades, downgrades and cancellations to an allocation, and
maps billing-plan lifecycle events onto them.

Upgrades grant the new allowance immediately. Downgrades keep what the
account already has, capped at the new allowance. Leaving an unlimited tier
is a fresh grant, since an unlimited account holds no allowance. None of
these touch the rollover or overage buckets.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.core.exceptions import UnknownPlanError, UnknownTierError
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_enums import ActionType, BillingPeriod, SourceType
from credit_ledger.app.services import ledger
from credit_ledger.app.services.allocation_store import AllocationStore, hard_cap_for
from credit_ledger.app.services.billing_cycle import Today, next_cycle_end
from credit_ledger.app.services.events import CreditEvent, EventBus, EventName
from credit_ledger.app.services.plan_catalog import PlanTierCatalog, normalize_plan

logger = logging.getLogger(__name__)

CANCELLED_TIER = "cancelled"


@dataclass(frozen=True)
class PlanMapping:
    plan: str
    tier: str
    billing_period: BillingPeriod


class TierTransitionHandler:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: AllocationStore,
        tier_resolver,
        events: Optional[EventBus] = None,
        plan_catalog: Optional[PlanTierCatalog] = None,
        today: Today = date.today,
    ):
        self.session_factory = session_factory
        self.store = store
        self.tier_resolver = tier_resolver
        self.events = events or EventBus()
        self.plan_catalog = plan_catalog or PlanTierCatalog(session_factory)
        self.today = today

    async def apply_tier_change(
        self,
        account_id: int,
        new_tier_key: str,
        is_upgrade: bool,
        billing_period: Optional[BillingPeriod] = None,
        reset_cycle: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Allocation:
        """
        Move an account to a new tier.

        Args:
            account_id: Account to transition
            new_tier_key: Target tier key
            is_upgrade: Upgrades reset the allowance to the new monthly amount;
                downgrades cap it at the new amount
            billing_period: New billing period, if it changes
            reset_cycle: Start a fresh billing cycle today
            metadata: Extra context recorded on the ledger entry

        Raises:
            UnknownTierError: If the tier key is not in the catalog
        """
        tier = self.tier_resolver.get_tier(new_tier_key)
        if tier is None:
            raise UnknownTierError(new_tier_key)

        new_monthly = max(0, tier.credits)
        await self.store.get_or_create(account_id)

        async def _apply(session: AsyncSession):
            allocation = await self.store.require(session, account_id)
            old_tier = allocation.tier
            old_monthly = allocation.monthly_allowance
            old_balance = allocation.current_balance
            new_balance = new_monthly if is_upgrade else min(old_balance, new_monthly)
            previous = self.tier_resolver.get_tier(old_tier)
            if previous is not None and previous.is_unlimited:
                new_balance = new_monthly

            fields: Dict[str, Any] = {
                "tier": tier.key,
                "monthly_allowance": new_monthly,
                "hard_cap": hard_cap_for(new_monthly),
                "current_balance": new_balance,
            }
            if billing_period is not None:
                fields["billing_period"] = BillingPeriod(billing_period)
            if reset_cycle:
                today = self.today()
                fields["billing_cycle_start"] = today
                fields["billing_cycle_end"] = next_cycle_end(today)

            await self.store.compare_and_set(session, allocation, **fields)
            await ledger.append_entry(
                session,
                allocation,
                action_type=ActionType.TIER_UPGRADED if is_upgrade else ActionType.TIER_DOWNGRADED,
                credits_used=-(new_balance - old_balance),
                source_type=SourceType.SYSTEM,
                metadata={
                    **(metadata or {}),
                    "old_tier": old_tier,
                    "new_tier": tier.key,
                    "old_monthly_allowance": old_monthly,
                    "new_monthly_allowance": new_monthly,
                },
            )
            return allocation, old_tier

        allocation, old_tier = await run_in_transaction(self.session_factory, _apply)
        logger.info(
            "Tier changed",
            extra={"account_id": account_id, "old_tier": old_tier, "new_tier": tier.key, "upgrade": is_upgrade},
        )
        await self.events.publish(CreditEvent(
            name=EventName.TIER_CHANGED,
            account_id=account_id,
            payload={
                "old_tier": old_tier,
                "new_tier": tier.key,
                "is_upgrade": is_upgrade,
                "current_balance": allocation.current_balance,
            },
        ))
        return allocation

    async def handle_cancellation(self, account_id: int) -> Optional[Allocation]:
        """
        Stop granting allowance on cancellation.

        Remaining balances are usable until spent; the next refill grants
        nothing. Accounts without an allocation are left alone.
        """
        if await self.store.get(account_id) is None:
            return None

        async def _cancel(session: AsyncSession):
            allocation = await self.store.require(session, account_id)
            previous_tier = allocation.tier
            cycle_end = allocation.billing_cycle_end

            await self.store.compare_and_set(
                session,
                allocation,
                tier=CANCELLED_TIER,
                monthly_allowance=0,
                hard_cap=0,
            )
            await ledger.append_entry(
                session,
                allocation,
                action_type=ActionType.PLAN_CANCELLED,
                credits_used=0,
                source_type=SourceType.SYSTEM,
                metadata={
                    "previous_tier": previous_tier,
                    "remaining_balance": allocation.total_balance,
                    "cycle_end": cycle_end.isoformat() if cycle_end else None,
                },
            )
            return allocation, previous_tier

        allocation, previous_tier = await run_in_transaction(self.session_factory, _cancel)
        logger.info("Plan cancelled", extra={"account_id": account_id, "previous_tier": previous_tier})
        await self.events.publish(CreditEvent(
            name=EventName.TIER_CHANGED,
            account_id=account_id,
            payload={"old_tier": previous_tier, "new_tier": CANCELLED_TIER, "is_upgrade": False},
        ))
        return allocation

    def is_upgrade(self, old_tier: str, new_tier: str) -> bool:
        """An unknown old tier (e.g. cancelled) always counts as an upgrade."""
        order = self.tier_resolver.priority_order()
        if old_tier not in order:
            return True
        if new_tier not in order:
            return False
        return order.index(new_tier) < order.index(old_tier)

    async def reconcile(self, account_id: int, tags: Optional[Iterable[str]] = None) -> bool:
        """
        Bring the stored tier in line with the account's membership tags.

        Args:
            account_id: Account to reconcile
            tags: The account's current tags; read from the tag source if omitted

        An existing allocation is left alone when no tags were given and none
        are on record, so an unsynced account is never downgraded to the
        default tier.

        Returns:
            True if the allocation was created or changed
        """
        if tags is None:
            tags = await self.tier_resolver.lookup_tags(account_id)

        allocation = await self.store.get(account_id)
        created = allocation is None
        if created:
            allocation = await self.store.get_or_create(account_id)
        if tags is None:
            if not created:
                logger.warning("No membership tags on record; tier left unchanged", extra={"account_id": account_id})
            return created

        resolved = self.tier_resolver.resolve_tags(tags)
        if allocation.tier == resolved.key:
            return created

        await self.apply_tier_change(
            account_id,
            resolved.key,
            is_upgrade=self.is_upgrade(allocation.tier, resolved.key),
            metadata={"trigger": "tags_modified"},
        )
        return True

    async def resolve_plan(self, plan: str) -> PlanMapping:
        """
        Map a billing plan name to a tier.

        Exact (case-insensitive) match first, then substring either way,
        so "Professional Annual" still maps to "professional".
        """
        name = normalize_plan(plan)
        if not name:
            raise UnknownPlanError(plan)

        plan_map = await self.plan_catalog.as_map()
        mapping = plan_map.get(name)
        matched = name
        if mapping is None:
            for key, candidate in plan_map.items():
                if key in name or name in key:
                    mapping, matched = candidate, key
                    break

        if mapping is None:
            raise UnknownPlanError(plan)
        return PlanMapping(
            plan=matched,
            tier=mapping["tier"],
            billing_period=BillingPeriod(mapping.get("billing_period") or "monthly"),
        )

    async def list_plan_mappings(self) -> List[Dict[str, Any]]:
        return await self.plan_catalog.list_all()

    async def save_plan_mapping(
        self,
        plan: str,
        tier_key: str,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> Dict[str, Any]:
        """
        Point a plan at a tier.

        Raises:
            UnknownTierError: If the tier key is not in the catalog
        """
        if self.tier_resolver.get_tier(tier_key) is None:
            raise UnknownTierError(tier_key)
        return await self.plan_catalog.upsert(plan, tier_key, billing_period)

    async def remove_plan_mapping(self, plan: str) -> None:
        """
        Raises:
            UnknownPlanError: If no mapping exists for the plan
        """
        if not await self.plan_catalog.remove(plan):
            raise UnknownPlanError(plan)

    async def handle_plan_activated(self, account_id: int, plan: str, reference_id: Optional[str] = None) -> Allocation:
        mapping = await self.resolve_plan(plan)
        return await self.apply_tier_change(
            account_id,
            mapping.tier,
            is_upgrade=True,
            billing_period=mapping.billing_period,
            reset_cycle=True,
            metadata={"trigger": "plan_activated", "plan": mapping.plan, "reference_id": reference_id},
        )

    async def handle_plan_reactivated(self, account_id: int, plan: str, reference_id: Optional[str] = None) -> Allocation:
        mapping = await self.resolve_plan(plan)
        return await self.apply_tier_change(
            account_id,
            mapping.tier,
            is_upgrade=True,
            billing_period=mapping.billing_period,
            reset_cycle=True,
            metadata={"trigger": "plan_reactivated", "plan": mapping.plan, "reference_id": reference_id},
        )

    async def handle_plan_upgraded(self, account_id: int, old_plan: Optional[str], new_plan: str) -> Allocation:
        mapping = await self.resolve_plan(new_plan)
        return await self.apply_tier_change(
            account_id,
            mapping.tier,
            is_upgrade=True,
            billing_period=mapping.billing_period,
            reset_cycle=True,
            metadata={"trigger": "plan_upgraded", "old_plan": old_plan, "new_plan": mapping.plan},
        )

    async def handle_plan_downgraded(self, account_id: int, old_plan: Optional[str], new_plan: str) -> Allocation:
        # Current cycle runs to its end; only the allowance cap changes
        mapping = await self.resolve_plan(new_plan)
        return await self.apply_tier_change(
            account_id,
            mapping.tier,
            is_upgrade=False,
            billing_period=mapping.billing_period,
            metadata={"trigger": "plan_downgraded", "old_plan": old_plan, "new_plan": mapping.plan},
        )

    async def handle_plan_cancelled(self, account_id: int) -> Optional[Allocation]:
        return await self.handle_cancellation(account_id)
