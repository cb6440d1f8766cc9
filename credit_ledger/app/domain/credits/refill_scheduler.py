"""
Refill Scheduler (Domain Logic).

Resets allowances at cycle boundaries and computes rollover for annual
accounts. A refill is keyed on the cycle end it observed, so a cycle is
refilled at most once no matter how many workers race on it.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.core.config import settings
from credit_ledger.app.core.exceptions import StaleAllocationError
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_enums import ActionType, BillingPeriod, SourceType
from credit_ledger.app.models.dlq import DeadLetterQueue, DLQStatus
from credit_ledger.app.services import ledger
from credit_ledger.app.services.allocation_store import AllocationStore
from credit_ledger.app.services.billing_cycle import Today, is_cycle_elapsed, next_cycle_end
from credit_ledger.app.services.events import CreditEvent, EventBus, EventName

logger = logging.getLogger(__name__)

SWEEP_TASK_NAME = "credit_refill_sweep"


@dataclass(frozen=True)
class RefillPlan:
    new_balance: int
    rollover: int
    forfeited: int


def plan_refill(
    allocation: Allocation,
    rollover_fraction: float = None,
    rollover_cap_fraction: float = None,
) -> RefillPlan:
    """
    Compute the post-refill buckets.

    Annual accounts carry unused allowance forward, up to a fraction of the
    monthly allowance, and allowance plus rollover never exceeds the cap
    fraction of the monthly allowance. Monthly accounts carry nothing.
    Whatever allowance and rollover is not carried forward is forfeited.
    """
    rollover_fraction = settings.rollover_fraction if rollover_fraction is None else rollover_fraction
    rollover_cap_fraction = settings.rollover_cap_fraction if rollover_cap_fraction is None else rollover_cap_fraction

    monthly = allocation.monthly_allowance
    rollover = 0
    if allocation.billing_period == BillingPeriod.ANNUAL:
        candidate = min(allocation.current_balance, math.floor(monthly * rollover_fraction))
        cap = math.floor(monthly * rollover_cap_fraction)
        rollover = max(0, min(candidate, cap - monthly))

    forfeited = allocation.current_balance + allocation.rollover_balance
    return RefillPlan(new_balance=monthly, rollover=rollover, forfeited=forfeited)


@dataclass
class SweepReport:
    refilled: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def as_dict(self):
        return {
            "refilled": len(self.refilled),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "failed_accounts": list(self.failed),
        }


class RefillScheduler:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: AllocationStore,
        events: Optional[EventBus] = None,
        today: Today = date.today,
    ):
        self.session_factory = session_factory
        self.store = store
        self.events = events or EventBus()
        self.today = today

    async def refill_due(self, account_id: int) -> bool:
        """Whether an existing allocation has reached its cycle end."""
        allocation = await self.store.get(account_id)
        if allocation is None:
            return False
        return is_cycle_elapsed(allocation.billing_cycle_end, self.today())

    async def refill(self, account_id: int) -> bool:
        """
        Refill one account if its cycle has elapsed.

        Writes an expiry entry for forfeited credits, the refill entry, and a
        rollover grant when something rolled over. The new cycle starts today,
        so an account that missed several boundaries is refilled once.

        Returns:
            True if refilled, False if not due, missing, or refilled by
            someone else first
        """
        today = self.today()

        async def _refill(session: AsyncSession):
            allocation = await self.store.load(session, account_id)
            if allocation is None or not is_cycle_elapsed(allocation.billing_cycle_end, today):
                return None

            plan = plan_refill(allocation)
            previous_cycle_end = allocation.billing_cycle_end
            previous_tier = allocation.tier

            await self.store.compare_and_set(
                session,
                allocation,
                expected_cycle_end=previous_cycle_end,
                current_balance=plan.new_balance,
                rollover_balance=plan.rollover,
                billing_cycle_start=today,
                billing_cycle_end=next_cycle_end(today),
            )

            overage = allocation.overage_balance
            cycle_meta = {
                "previous_cycle_end": previous_cycle_end.isoformat() if previous_cycle_end else None,
                "billing_period": allocation.billing_period.value,
                "tier": previous_tier,
            }
            if plan.forfeited > 0:
                await ledger.append_entry(
                    session,
                    allocation,
                    action_type=ActionType.CYCLE_EXPIRY,
                    credits_used=plan.forfeited,
                    source_type=SourceType.SYSTEM,
                    metadata=cycle_meta,
                    balance_after=overage,
                )
            await ledger.append_entry(
                session,
                allocation,
                action_type=ActionType.MONTHLY_REFILL,
                credits_used=-plan.new_balance,
                source_type=SourceType.REFILL,
                metadata=cycle_meta,
                balance_after=overage + plan.new_balance,
            )
            if plan.rollover > 0:
                await ledger.append_entry(
                    session,
                    allocation,
                    action_type=ActionType.ROLLOVER_CREDIT,
                    credits_used=-plan.rollover,
                    source_type=SourceType.ROLLOVER_GRANT,
                    metadata=cycle_meta,
                )
            return plan, allocation.total_balance

        try:
            outcome = await run_in_transaction(self.session_factory, _refill)
        except StaleAllocationError:
            logger.info("Allocation changed during refill; left for the next sweep", extra={"account_id": account_id})
            return False

        if outcome is None:
            return False

        plan, balance_after = outcome
        logger.info(
            "Allocation refilled",
            extra={"account_id": account_id, "rollover": plan.rollover, "forfeited": plan.forfeited},
        )
        await self.events.publish(CreditEvent(
            name=EventName.CYCLE_REFILLED,
            account_id=account_id,
            payload={
                "monthly_allowance": plan.new_balance,
                "rollover": plan.rollover,
                "forfeited": plan.forfeited,
                "balance_after": balance_after,
            },
        ))
        return True

    async def sweep_all(self) -> SweepReport:
        """
        Refill every account whose cycle has elapsed.

        Each account runs in its own transaction. A failing account is
        logged, dead-lettered and skipped; the sweep continues.
        """
        today = self.today()
        due = await run_in_transaction(
            self.session_factory, lambda session: self.store.list_due_accounts(session, today)
        )
        report = SweepReport()

        for account_id in due:
            try:
                refilled = await self.refill(account_id)
            except Exception as exc:
                logger.exception("Refill failed during sweep", extra={"account_id": account_id})
                report.failed.append(account_id)
                await self._dead_letter(account_id, exc)
                continue

            if refilled:
                report.refilled.append(account_id)
            else:
                report.skipped.append(account_id)

        logger.info("Refill sweep finished", extra=report.as_dict())
        return report

    async def _dead_letter(self, account_id: int, exc: Exception) -> None:
        async def _record(session: AsyncSession) -> None:
            session.add(DeadLetterQueue(
                task_name=SWEEP_TASK_NAME,
                account_id=account_id,
                error_message=f"{type(exc).__name__}: {exc}",
                payload={"account_id": account_id, "swept_on": self.today().isoformat()},
                status=DLQStatus.FAILED,
            ))

        try:
            await run_in_transaction(self.session_factory, _record)
        except Exception:
            logger.exception("Could not record failed refill", extra={"account_id": account_id})

    async def list_dead_letters(self, status: Optional[DLQStatus] = DLQStatus.FAILED) -> List[dict]:
        async def _list(session: AsyncSession) -> List[dict]:
            query = select(DeadLetterQueue).where(DeadLetterQueue.task_name == SWEEP_TASK_NAME)
            if status is not None:
                query = query.where(DeadLetterQueue.status == status)
            result = await session.execute(query.order_by(DeadLetterQueue.id))
            return [serialize_dead_letter(row) for row in result.scalars().all()]

        return await run_in_transaction(self.session_factory, _list)

    async def retry_dead_letter(self, dlq_id: int, max_retries: int = 3) -> Optional[dict]:
        """
        Re-run a failed refill.

        The row becomes PROCESSED on success (including "no longer due"),
        and ARCHIVED once `max_retries` attempts have failed.
        """
        async def _claim(session: AsyncSession) -> Optional[int]:
            row = await session.get(DeadLetterQueue, dlq_id)
            if row is None:
                return None
            row.status = DLQStatus.RETRYING
            await session.flush()
            return row.account_id

        account_id = await run_in_transaction(self.session_factory, _claim)
        if account_id is None:
            return None

        error = None
        try:
            await self.refill(account_id)
        except Exception as exc:
            logger.exception("Dead letter retry failed", extra={"dlq_id": dlq_id})
            error = f"{type(exc).__name__}: {exc}"

        async def _update(session: AsyncSession) -> dict:
            row = await session.get(DeadLetterQueue, dlq_id)
            row.retry_count = (row.retry_count or 0) + 1
            row.last_retry_at = datetime.now(timezone.utc)
            if error is None:
                row.status = DLQStatus.PROCESSED
            else:
                row.error_message = error
                row.status = DLQStatus.ARCHIVED if row.retry_count >= max_retries else DLQStatus.FAILED
            await session.flush()
            return serialize_dead_letter(row)

        return await run_in_transaction(self.session_factory, _update)


def serialize_dead_letter(entry: DeadLetterQueue) -> dict:
    return {
        "id": entry.id,
        "task_name": entry.task_name,
        "account_id": entry.account_id,
        "error_message": entry.error_message,
        "payload": entry.payload,
        "status": entry.status.value,
        "retry_count": entry.retry_count or 0,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "last_retry_at": entry.last_retry_at.isoformat() if entry.last_retry_at else None,
    }
