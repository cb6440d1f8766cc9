"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from credit_ledger.app.api.v1.endpoints import credits, admin_credits, integrations, admin_ops

router = APIRouter()

# Account-facing credit views and the gate
router.include_router(credits.router)

# Operator overrides
router.include_router(admin_credits.router)

# Payment and membership integrations
router.include_router(integrations.router)

# Sweep, DLQ and provisioning
router.include_router(admin_ops.router)
