"""
Admin Credit API Endpoints.

Operator overrides: balance adjustment, action cost, plan tier map and
credit pack management, allocation listing and tier synchronisation. Operator identity travels in the request.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import List, Optional

from credit_ledger.app.core.dependencies import CreditServices, get_credit_services
from credit_ledger.app.schemas.credits import (
    ActionCostResponse,
    ActionCostUpdate,
    AdjustBalanceRequest,
    AllocationPage,
    BalanceResponse,
    CreditPackResponse,
    CreditPackUpdate,
    PlanMappingResponse,
    PlanMappingUpdate,
    SyncResponse,
    TierChangeRequest,
)

router = APIRouter(prefix="/admin/credits", tags=["Admin - Credits"])


@router.post("/{account_id}/adjust", response_model=BalanceResponse)
async def adjust_balance(
    request: AdjustBalanceRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Add or remove allowance credits. Removals floor at zero."""
    try:
        await services.engine.adjust_balance(
            account_id, request.amount, reason=request.reason, operator=request.operator
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return await services.reporter.balance(account_id)


@router.get("/action-costs", response_model=List[ActionCostResponse])
async def list_action_costs(
    services: CreditServices = Depends(get_credit_services),
):
    """Every action cost, active or not."""
    return await services.catalog.list_all()


@router.put("/action-costs/{action_type}", response_model=ActionCostResponse)
async def update_action_cost(
    update: ActionCostUpdate,
    action_type: str = Path(..., min_length=1, max_length=100),
    services: CreditServices = Depends(get_credit_services),
):
    return await services.catalog.update(
        action_type,
        credits_per_unit=update.credits_per_unit,
        description=update.description,
        is_active=update.is_active,
    )


@router.get("/plan-tier-map", response_model=List[PlanMappingResponse])
async def list_plan_tier_map(
    services: CreditServices = Depends(get_credit_services),
):
    return await services.transitions.list_plan_mappings()


@router.put("/plan-tier-map/{plan}", response_model=PlanMappingResponse)
async def save_plan_tier_mapping(
    update: PlanMappingUpdate,
    plan: str = Path(..., min_length=1, max_length=100),
    services: CreditServices = Depends(get_credit_services),
):
    """Create or repoint a billing plan's tier."""
    try:
        return await services.transitions.save_plan_mapping(plan, update.tier, update.billing_period)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.delete("/plan-tier-map/{plan}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_plan_tier_mapping(
    plan: str = Path(..., min_length=1, max_length=100),
    services: CreditServices = Depends(get_credit_services),
):
    await services.transitions.remove_plan_mapping(plan)


@router.get("/credit-packs", response_model=List[CreditPackResponse])
async def list_credit_packs(
    services: CreditServices = Depends(get_credit_services),
):
    """Every credit pack, on sale or not."""
    return await services.overage.list_all_packs()


@router.put("/credit-packs/{pack_key}", response_model=CreditPackResponse)
async def save_credit_pack(
    update: CreditPackUpdate,
    pack_key: str = Path(..., min_length=1, max_length=50),
    services: CreditServices = Depends(get_credit_services),
):
    try:
        return await services.overage.save_pack(
            pack_key, credits=update.credits, name=update.name, is_active=update.is_active
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/allocations", response_model=AllocationPage)
async def list_allocations(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    tier: Optional[str] = None,
    sort_by: str = Query("account_id"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    services: CreditServices = Depends(get_credit_services),
):
    return await services.store.list_allocations(
        page=page, per_page=per_page, tier=tier, sort_by=sort_by, sort_order=sort_order
    )


@router.post("/{account_id}/sync", response_model=SyncResponse)
async def sync_account_tier(
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Re-resolve the account's tier and apply any transition."""
    changed = await services.transitions.reconcile(account_id)
    return {
        "account_id": account_id,
        "changed": changed,
        "balance": await services.reporter.balance(account_id),
    }


@router.post("/{account_id}/tier", response_model=BalanceResponse)
async def change_tier(
    request: TierChangeRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_credit_services),
):
    """Move an account to a tier directly."""
    allocation = await services.store.get_or_create(account_id)
    is_upgrade = request.is_upgrade
    if is_upgrade is None:
        is_upgrade = services.transitions.is_upgrade(allocation.tier, request.tier)

    await services.transitions.apply_tier_change(
        account_id,
        request.tier,
        is_upgrade=is_upgrade,
        billing_period=request.billing_period,
        metadata={"trigger": "operator"},
    )
    return await services.reporter.balance(account_id)
