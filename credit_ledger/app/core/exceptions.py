"""
Custom exceptions and error handlers for consistent error responses.

Provides the credit error taxonomy with standardized error codes and the
global exception handlers that render it.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CreditError(Exception):
    """Base credit ledger exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class NotProvisionedError(CreditError):
    """Raised when the ledger tables have not been created yet."""

    def __init__(self, provisioning_status: str = "MISSING"):
        super().__init__(
            message="Credit ledger storage is not provisioned",
            error_code="ERR_CREDITS_NOT_PROVISIONED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"provisioning_status": provisioning_status},
        )


class InsufficientCreditsError(CreditError):
    """Raised when the spendable total is below the action's cost."""

    def __init__(
        self,
        cost: int,
        balance: Dict[str, Any],
        upgrade_target: Optional[str] = None,
    ):
        total = int(balance.get("total", 0))
        super().__init__(
            message=f"Action requires {cost} credits but only {total} remain",
            error_code="ERR_CREDITS_INSUFFICIENT",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={
                "reason": "insufficient_credits",
                "cost": cost,
                "shortfall": max(0, cost - total),
                "balance": balance,
                "upgrade_target": upgrade_target,
                "can_purchase_overage": True,
            },
        )

    @property
    def shortfall(self) -> int:
        return self.details["shortfall"]


class HardCapReachedError(CreditError):
    """Raised when a capped account has exhausted every bucket."""

    def __init__(
        self,
        cost: int,
        balance: Dict[str, Any],
        refill_date: Optional[date],
        upgrade_target: Optional[str] = None,
    ):
        super().__init__(
            message="Credit limit reached for this billing cycle",
            error_code="ERR_CREDITS_HARD_CAP",
            status_code=status.HTTP_403_FORBIDDEN,
            details={
                "reason": "hard_cap_reached",
                "cost": cost,
                "balance": balance,
                "refill_date": refill_date.isoformat() if refill_date else None,
                "upgrade_target": upgrade_target,
            },
        )

    @property
    def refill_date(self) -> Optional[str]:
        return self.details["refill_date"]


class InvalidActionError(CreditError):
    """Raised when an unknown action type is addressed directly."""

    def __init__(self, action_type: str):
        super().__init__(
            message=f"Action type '{action_type}' not found",
            error_code="ERR_CREDITS_INVALID_ACTION",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"action_type": action_type},
        )


class AllocationNotFoundError(CreditError):
    """Raised when an allocation that must exist is missing."""

    def __init__(self, account_id: Any):
        super().__init__(
            message=f"Allocation for account {account_id} not found",
            error_code="ERR_CREDITS_NO_ALLOCATION",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"account_id": account_id},
        )


class StaleAllocationError(CreditError):
    """Raised when a compare-and-set update lost a race with another writer."""

    def __init__(self, account_id: Any, expected_version: int):
        super().__init__(
            message=f"Allocation for account {account_id} changed concurrently",
            error_code="ERR_CREDITS_STALE_ALLOCATION",
            status_code=status.HTTP_409_CONFLICT,
            details={"account_id": account_id, "expected_version": expected_version},
        )


class StoreTimeoutError(CreditError):
    """Raised when a store unit of work exceeds its timeout."""

    def __init__(self, seconds: float):
        super().__init__(
            message=f"Credit store call timed out after {seconds}s",
            error_code="ERR_CREDITS_STORE_TIMEOUT",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            details={"timeout_seconds": seconds},
        )


class UnknownTierError(CreditError):
    """Raised when a tier key is not in the tier catalog."""

    def __init__(self, tier_key: str):
        super().__init__(
            message=f"Tier '{tier_key}' not found",
            error_code="ERR_CREDITS_UNKNOWN_TIER",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"tier": tier_key},
        )


class UnknownPlanError(CreditError):
    """Raised when an external plan name has no tier mapping."""

    def __init__(self, plan: str):
        super().__init__(
            message=f"No tier mapping for plan '{plan}'",
            error_code="ERR_CREDITS_UNKNOWN_PLAN",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"plan": plan},
        )


class UnknownPackError(CreditError):
    """Raised when a credit pack key is not configured."""

    def __init__(self, pack_key: str):
        super().__init__(
            message=f"Credit pack '{pack_key}' not found",
            error_code="ERR_CREDITS_UNKNOWN_PACK",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"pack_key": pack_key},
        )


# Global Exception Handlers

async def credit_exception_handler(request: Request, exc: CreditError) -> JSONResponse:
    """Handler for credit ledger exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
