"""
Integration API Endpoints.

Inbound commands from the payment and membership integrations. Purchases
arrive here already verified; this service does no payment verification.
Commands are refused with 503 until the ledger is provisioned, so the
sender retries instead of losing them.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, status
from typing import List

from credit_ledger.app.core.dependencies import CreditServices, get_credit_services, get_provisioned_services
from credit_ledger.app.schemas.credits import (
    BalanceResponse,
    CreditPackGrantRequest,
    CreditPackResponse,
    OverageGrantRequest,
    PlanEventRequest,
    SyncResponse,
    TagsModifiedRequest,
)

router = APIRouter(prefix="/integrations", tags=["Integrations"])


@router.get("/credit-packs", response_model=List[CreditPackResponse])
async def list_credit_packs(
    services: CreditServices = Depends(get_credit_services),
):
    """Packs currently on sale."""
    return await services.overage.list_packs()


@router.post("/{account_id}/overage", response_model=BalanceResponse, status_code=status.HTTP_201_CREATED)
async def grant_overage(
    request: OverageGrantRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_provisioned_services),
):
    """Grant purchased overage credits."""
    metadata = {
        **(request.metadata or {}),
        "reference_id": request.reference_id,
        "reference_type": request.reference_type,
    }
    await services.overage.grant_overage_credits(account_id, request.credits, metadata)
    return await services.reporter.balance(account_id)


@router.post("/{account_id}/credit-pack", response_model=BalanceResponse, status_code=status.HTTP_201_CREATED)
async def grant_credit_pack(
    request: CreditPackGrantRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_provisioned_services),
):
    """Grant a purchased credit pack."""
    await services.overage.grant_credit_pack(
        account_id,
        request.pack_key,
        {"reference_id": request.reference_id, "reference_type": request.reference_type},
    )
    return await services.reporter.balance(account_id)


@router.post("/{account_id}/plan-events", response_model=BalanceResponse)
async def handle_plan_event(
    request: PlanEventRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_provisioned_services),
):
    """Apply a billing-plan lifecycle event to the account's allocation."""
    transitions = services.transitions
    if request.event != "cancelled" and not request.plan:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'plan' is required for {request.event} events",
        )

    if request.event == "activated":
        await transitions.handle_plan_activated(account_id, request.plan, request.reference_id)
    elif request.event == "reactivated":
        await transitions.handle_plan_reactivated(account_id, request.plan, request.reference_id)
    elif request.event == "upgraded":
        await transitions.handle_plan_upgraded(account_id, request.previous_plan, request.plan)
    elif request.event == "downgraded":
        await transitions.handle_plan_downgraded(account_id, request.previous_plan, request.plan)
    else:
        await transitions.handle_plan_cancelled(account_id)

    return await services.reporter.balance(account_id)


@router.post("/{account_id}/tags-modified", response_model=SyncResponse)
async def handle_tags_modified(
    request: TagsModifiedRequest,
    account_id: int = Path(..., ge=1),
    services: CreditServices = Depends(get_provisioned_services),
):
    """Record the account's current membership tags and reconcile its tier."""
    tags = await services.account_tags.replace(account_id, request.tags)
    changed = await services.transitions.reconcile(account_id, tags=tags)
    return {
        "account_id": account_id,
        "changed": changed,
        "balance": await services.reporter.balance(account_id),
    }
