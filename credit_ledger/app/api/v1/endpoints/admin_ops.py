"""
Admin Operations API Endpoints.

Refill sweep trigger, dead-letter queue management and schema provisioning.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from typing import List, Optional

from credit_ledger.app.core.dependencies import CreditServices, get_credit_services
from credit_ledger.app.models.dlq import DLQStatus
from credit_ledger.app.schemas.credits import DeadLetterResponse, SweepReportResponse

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/refill-sweep", response_model=SweepReportResponse)
async def trigger_refill_sweep(
    services: CreditServices = Depends(get_credit_services),
):
    """Refill every account whose billing cycle has elapsed."""
    report = await services.scheduler.sweep_all()
    return report.as_dict()


@router.get("/dlq", response_model=List[DeadLetterResponse])
async def list_dlq_items(
    status: Optional[DLQStatus] = Query(DLQStatus.FAILED),
    services: CreditServices = Depends(get_credit_services),
):
    return await services.scheduler.list_dead_letters(status)


@router.post("/dlq/{dlq_id}/retry", response_model=DeadLetterResponse)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    services: CreditServices = Depends(get_credit_services),
):
    """Re-run a failed refill from the Dead Letter Queue."""
    item = await services.scheduler.retry_dead_letter(dlq_id)
    if item is None:
        raise HTTPException(status_code=404, detail="DLQ item not found")
    return item


@router.get("/provisioning")
async def get_provisioning_status(
    services: CreditServices = Depends(get_credit_services),
):
    status = await services.provisioner.status()
    return {"status": status.value}


@router.post("/provisioning")
async def provision_schema(
    services: CreditServices = Depends(get_credit_services),
):
    """Create the ledger tables and seed the default action costs."""
    ready = await services.provisioner.create_tables()
    status = await services.provisioner.status()
    return {"ready": ready, "status": status.value}
