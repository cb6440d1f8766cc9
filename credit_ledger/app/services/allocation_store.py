"""
Allocation Store.

Owns one allocation row per account: lazy creation seeded from the account's
tier, and compare-and-set mutation of the balance columns.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func, asc, desc, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.core.config import settings
from credit_ledger.app.core.exceptions import AllocationNotFoundError, StaleAllocationError
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_enums import ActionType, BillingPeriod, SourceType
from credit_ledger.app.services import ledger
from credit_ledger.app.services.billing_cycle import Today, next_cycle_end

logger = logging.getLogger(__name__)

BALANCE_FIELDS = ("current_balance", "rollover_balance", "overage_balance")

SORTABLE_FIELDS = {
    "account_id": Allocation.account_id,
    "tier": Allocation.tier,
    "current_balance": Allocation.current_balance,
    "monthly_allowance": Allocation.monthly_allowance,
    "billing_cycle_end": Allocation.billing_cycle_end,
}

_UNSET = object()


def hard_cap_for(monthly_allowance: int) -> int:
    """Hard cap is a multiple of the monthly allowance; 0 means uncapped."""
    return monthly_allowance * settings.hard_cap_multiplier if monthly_allowance > 0 else 0


class AllocationStore:
    """
    Allocation CRUD plus atomic balance mutation.

    Methods taking a session run inside the caller's unit of work; the others
    open their own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker, tier_resolver, today: Today = date.today):
        self.session_factory = session_factory
        self.tier_resolver = tier_resolver
        self.today = today

    async def get(self, account_id: int) -> Optional[Allocation]:
        return await run_in_transaction(
            self.session_factory, lambda session: self.load(session, account_id)
        )

    async def get_or_create(self, account_id: int) -> Allocation:
        """
        Get an account's allocation, creating it from the resolved tier if absent.

        A concurrent creator that loses the unique-key race re-reads the
        winner's row instead of failing.
        """
        existing = await self.get(account_id)
        if existing is not None:
            return existing

        tier = await self.tier_resolver.resolve_tier(account_id)
        try:
            return await run_in_transaction(
                self.session_factory, lambda session: self._create(session, account_id, tier)
            )
        except IntegrityError:
            logger.info("Allocation created concurrently", extra={"account_id": account_id})
            created = await self.get(account_id)
            if created is None:
                raise AllocationNotFoundError(account_id)
            return created

    async def load(self, db: AsyncSession, account_id: int) -> Optional[Allocation]:
        result = await db.execute(select(Allocation).where(Allocation.account_id == account_id))
        return result.scalar_one_or_none()

    async def require(self, db: AsyncSession, account_id: int) -> Allocation:
        allocation = await self.load(db, account_id)
        if allocation is None:
            raise AllocationNotFoundError(account_id)
        return allocation

    async def _create(self, db: AsyncSession, account_id: int, tier) -> Allocation:
        # Unlimited tiers (-1) never reach the ledger as -1
        monthly = max(0, int(tier.credits))
        today = self.today()

        allocation = Allocation(
            account_id=account_id,
            tier=tier.key,
            monthly_allowance=monthly,
            current_balance=monthly,
            rollover_balance=0,
            overage_balance=0,
            hard_cap=hard_cap_for(monthly),
            billing_period=BillingPeriod.MONTHLY,
            billing_cycle_start=today,
            billing_cycle_end=next_cycle_end(today),
            version=1,
        )
        db.add(allocation)
        await db.flush()

        if monthly > 0:
            await ledger.append_entry(
                db,
                allocation,
                action_type=ActionType.ALLOCATION_SEED,
                credits_used=-monthly,
                source_type=SourceType.REFILL,
                metadata={"tier": tier.key},
            )

        logger.info(
            "Allocation created",
            extra={"account_id": account_id, "tier": tier.key, "monthly_allowance": monthly},
        )
        return allocation

    async def compare_and_set(
        self,
        db: AsyncSession,
        allocation: Allocation,
        expected_cycle_end: Any = _UNSET,
        **fields: Any,
    ) -> Allocation:
        """
        Write `fields` only if nobody else has changed the row since it was read.

        The update is keyed on the row's `version` (and optionally on its
        `billing_cycle_end`); a lost race leaves the row untouched.

        Raises:
            ValueError: If any bucket would go negative
            StaleAllocationError: If the row changed since `allocation` was read
        """
        for field in BALANCE_FIELDS:
            if field in fields and fields[field] < 0:
                raise ValueError(f"{field} cannot be negative ({fields[field]})")

        expected_version = allocation.version
        criteria = [Allocation.id == allocation.id, Allocation.version == expected_version]
        if expected_cycle_end is not _UNSET:
            if expected_cycle_end is None:
                criteria.append(Allocation.billing_cycle_end.is_(None))
            else:
                criteria.append(Allocation.billing_cycle_end == expected_cycle_end)

        result = await db.execute(
            update(Allocation)
            .where(*criteria)
            .values(**fields, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleAllocationError(allocation.account_id, expected_version)

        await db.refresh(allocation)
        return allocation

    async def list_due_accounts(self, db: AsyncSession, today: date) -> List[int]:
        """Accounts whose billing cycle has elapsed, however long ago."""
        result = await db.execute(
            select(Allocation.account_id)
            .where(or_(Allocation.billing_cycle_end.is_(None), Allocation.billing_cycle_end <= today))
            .order_by(Allocation.account_id)
        )
        return result.scalars().all()

    async def list_allocations(
        self,
        page: int = 1,
        per_page: int = 20,
        tier: Optional[str] = None,
        sort_by: str = "account_id",
        sort_order: str = "asc",
    ) -> Dict[str, Any]:
        """Paginated allocation listing for operators."""
        page = max(1, page)
        per_page = min(100, max(1, per_page))
        column = SORTABLE_FIELDS.get(sort_by, Allocation.account_id)
        ordering = desc(column) if sort_order.lower() == "desc" else asc(column)

        async def _list(session: AsyncSession) -> Dict[str, Any]:
            query = select(Allocation)
            count_query = select(func.count(Allocation.id))
            if tier:
                query = query.where(Allocation.tier == tier)
                count_query = count_query.where(Allocation.tier == tier)

            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(
                query.order_by(ordering, Allocation.id).limit(per_page).offset((page - 1) * per_page)
            )
            return {
                "allocations": [serialize_allocation(row) for row in result.scalars().all()],
                "total": total,
                "pages": -(-total // per_page),
                "page": page,
            }

        return await run_in_transaction(self.session_factory, _list)


def serialize_allocation(allocation: Allocation) -> Dict[str, Any]:
    return {
        "account_id": allocation.account_id,
        "tier": allocation.tier,
        "monthly_allowance": allocation.monthly_allowance,
        "current_balance": allocation.current_balance,
        "rollover_balance": allocation.rollover_balance,
        "overage_balance": allocation.overage_balance,
        "total": allocation.total_balance,
        "hard_cap": allocation.hard_cap,
        "billing_period": allocation.billing_period.value,
        "billing_cycle_start": allocation.billing_cycle_start.isoformat() if allocation.billing_cycle_start else None,
        "billing_cycle_end": allocation.billing_cycle_end.isoformat() if allocation.billing_cycle_end else None,
    }
