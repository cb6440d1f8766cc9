"""
Transaction Ledger service.

Append-only log of every balance-affecting event, plus the read queries
used for history, usage summaries and balance reconstruction.
"""

from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_enums import SourceType, NON_SPEND_SOURCES
from credit_ledger.app.models.transaction import CreditTransaction


async def append_entry(
    db: AsyncSession,
    allocation: Allocation,
    action_type: str,
    credits_used: int,
    source_type: SourceType,
    metadata: Optional[Dict[str, Any]] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    balance_after: Optional[int] = None,
) -> CreditTransaction:
    """
    Append one immutable entry for an allocation.

    Must run inside the same transaction as the balance mutation it records,
    so the entry and the new buckets are written together or not at all.

    Args:
        db: Database session (transaction managed by caller)
        allocation: Allocation after the mutation
        action_type: What consumed or granted the credits
        credits_used: Positive when consumed, negative when granted
        source_type: Bucket or bookkeeping category
        metadata: Additional context as JSON
        reference_id: External reference (payment session, plan event)
        reference_type: Kind of external reference
        balance_after: Override for the total snapshot; defaults to the allocation total

    Returns:
        Created CreditTransaction instance
    """
    entry = CreditTransaction(
        allocation_id=allocation.id,
        account_id=allocation.account_id,
        action_type=action_type,
        credits_used=int(credits_used),
        balance_after=allocation.total_balance if balance_after is None else int(balance_after),
        source_type=source_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        meta_data=metadata or None,
        created_at=datetime.now(timezone.utc),
    )

    db.add(entry)
    await db.flush()

    return entry


async def get_transactions(
    db: AsyncSession,
    account_id: int,
    page: int = 1,
    per_page: int = 20
) -> Dict[str, Any]:
    """
    Paginated transaction history, most recent first.

    Returns:
        Dict with transactions, total count, page count and current page
    """
    page = max(1, page)
    per_page = max(1, per_page)

    total = (await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account_id)
    )).scalar() or 0

    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(desc(CreditTransaction.id))
        .limit(per_page)
        .offset((page - 1) * per_page)
    )

    return {
        "transactions": [serialize_entry(entry) for entry in result.scalars().all()],
        "total": total,
        "pages": -(-total // per_page),
        "page": page,
    }


async def get_entries_in_order(db: AsyncSession, account_id: int) -> List[CreditTransaction]:
    """All entries for an account in write order."""
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.id)
    )
    return result.scalars().all()


async def get_usage_by_action(
    db: AsyncSession,
    account_id: int,
    since: date
) -> List[Dict[str, Any]]:
    """
    Spend per action type since a date.

    Refills, adjustments, rollover grants and system bookkeeping are not
    spend; neither are grants (negative entries) such as overage purchases.
    """
    total_credits = func.sum(CreditTransaction.credits_used)
    result = await db.execute(
        select(
            CreditTransaction.action_type,
            total_credits.label("total_credits"),
            func.count(CreditTransaction.id).label("action_count"),
        )
        .where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.created_at >= datetime.combine(since, time.min, tzinfo=timezone.utc),
            CreditTransaction.source_type.not_in(NON_SPEND_SOURCES),
            CreditTransaction.credits_used > 0,
        )
        .group_by(CreditTransaction.action_type)
        .order_by(desc(total_credits), CreditTransaction.action_type)
    )

    return [
        {
            "action_type": action_type,
            "total_credits": int(credits or 0),
            "action_count": int(count or 0),
        }
        for action_type, credits, count in result.all()
    ]


async def get_replayed_total(db: AsyncSession, account_id: int) -> int:
    """Total balance implied by the ledger: grants are negative, so negate the sum."""
    net = (await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.credits_used), 0)).where(
            CreditTransaction.account_id == account_id
        )
    )).scalar()
    return -int(net or 0)


def serialize_entry(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action_type": entry.action_type,
        "credits_used": entry.credits_used,
        "balance_after": entry.balance_after,
        "source_type": entry.source_type.value,
        "reference_id": entry.reference_id,
        "reference_type": entry.reference_type,
        "metadata": entry.meta_data,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
