"""
Budget Reporter.

Read-only views over allocations and the ledger: balance, per-action
budget, usage since the cycle start, and transaction history.
"""

from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.services import ledger
from credit_ledger.app.services.action_catalog import ActionCatalog
from credit_ledger.app.services.allocation_store import AllocationStore, serialize_allocation

UNLIMITED_BUDGET = -1


def percent_used(monthly_allowance: int, current_balance: int) -> float:
    """Share of this cycle's allowance consumed, clamped to 0..100."""
    if monthly_allowance <= 0:
        return 0.0
    used = (monthly_allowance - current_balance) / monthly_allowance * 100
    return round(min(100.0, max(0.0, used)), 1)


class BudgetReporter:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: AllocationStore,
        catalog: ActionCatalog,
    ):
        self.session_factory = session_factory
        self.store = store
        self.catalog = catalog

    async def balance(self, account_id: int) -> Dict[str, Any]:
        """Bucket balances for an account, creating its allocation on first use."""
        allocation = await self.store.get_or_create(account_id)
        return {
            **serialize_allocation(allocation),
            "percent_used": percent_used(allocation.monthly_allowance, allocation.current_balance),
        }

    async def action_budget(self, account_id: int) -> List[Dict[str, Any]]:
        """How many times each active action can still be afforded."""
        allocation = await self.store.get_or_create(account_id)
        total = allocation.total_balance
        budget = []
        for action in await self.catalog.list_active():
            cost = action["credits_per_unit"]
            budget.append({
                **action,
                "affordable_count": total // cost if cost > 0 else UNLIMITED_BUDGET,
            })
        return budget

    async def usage_summary(self, account_id: int) -> Dict[str, Any]:
        """Spend per action since the current cycle started."""
        allocation = await self.store.get_or_create(account_id)
        since = allocation.billing_cycle_start

        usage = await run_in_transaction(
            self.session_factory,
            lambda session: ledger.get_usage_by_action(session, account_id, since),
        )
        return {
            "account_id": account_id,
            "since": since.isoformat(),
            "total_credits": sum(row["total_credits"] for row in usage),
            "by_action": usage,
        }

    async def transactions(self, account_id: int, page: int = 1, per_page: int = 20) -> Dict[str, Any]:
        per_page = min(100, max(1, per_page))
        return await run_in_transaction(
            self.session_factory,
            lambda session: ledger.get_transactions(session, account_id, page, per_page),
        )

    async def replay_total(self, account_id: int) -> Dict[str, Any]:
        """Compare the stored total with the total implied by the ledger."""

        async def _replay(session: AsyncSession) -> Dict[str, Any]:
            allocation = await self.store.load(session, account_id)
            replayed = await ledger.get_replayed_total(session, account_id)
            stored = allocation.total_balance if allocation is not None else 0
            return {
                "account_id": account_id,
                "stored_total": stored,
                "replayed_total": replayed,
                "consistent": stored == replayed,
            }

        return await run_in_transaction(self.session_factory, _replay)
