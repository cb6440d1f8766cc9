"""
Account Credit API Endpoints.

Balance, history and usage views, plus the gate check/commit pair that
feature code calls around a credit-consuming action.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import List

from credit_ledger.app.core.dependencies import CreditServices, get_credit_services
from credit_ledger.app.schemas.credits import (
    ActionBudgetResponse,
    ActionRequest,
    BalanceResponse,
    CommitResponse,
    GateDecisionResponse,
    ReplayResponse,
    TransactionPage,
    UsageSummaryResponse,
)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("/{account_id}/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Current bucket breakdown. Creates the allocation on first use."""
    return await services.reporter.balance(account_id)


@router.get("/{account_id}/transactions", response_model=TransactionPage)
async def list_transactions(
    account_id: int = Path(..., ge=1),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    services: CreditServices = Depends(get_credit_services),
):
    """Transaction history, newest first."""
    return await services.reporter.transactions(account_id, page, per_page)


@router.get("/{account_id}/actions", response_model=List[ActionBudgetResponse])
async def list_action_budget(
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Active actions with how many more times each can be afforded."""
    return await services.reporter.action_budget(account_id)


@router.get("/{account_id}/usage", response_model=UsageSummaryResponse)
async def get_usage(
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Spend by action type for the current billing cycle."""
    return await services.reporter.usage_summary(account_id)


@router.get("/{account_id}/replay", response_model=ReplayResponse)
async def replay_ledger(
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Check the stored total against the ledger."""
    return await services.reporter.replay_total(account_id)


@router.post("/{account_id}/check", response_model=GateDecisionResponse)
async def check_action(
    request: ActionRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """
    Pre-action gate check.

    Denials are returned in the body rather than raised, so callers can show
    the upgrade target and refill date.
    """
    decision = await services.gate.check(account_id, request.action_type, request.units)
    return decision.as_dict()


@router.post("/{account_id}/require", response_model=GateDecisionResponse)
async def require_action(
    request: ActionRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Gate check that answers 402/403 when the action is denied."""
    decision = await services.gate.require(account_id, request.action_type, request.units)
    return decision.as_dict()


@router.post("/{account_id}/commit", response_model=CommitResponse)
async def commit_action(
    request: ActionRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Record a completed action."""
    try:
        committed = await services.gate.commit(
            account_id, request.action_type, request.units, request.metadata
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    balance = await services.reporter.balance(account_id) if committed else None
    return {"committed": committed, "balance": balance}
