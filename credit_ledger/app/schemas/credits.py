"""
Credit ledger request and response schemas.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from credit_ledger.app.models.credit_enums import BillingPeriod


class BalanceResponse(BaseModel):
    """Bucket breakdown for one account."""
    account_id: int
    tier: str
    monthly_allowance: int
    current_balance: int
    rollover_balance: int
    overage_balance: int
    total: int
    hard_cap: int
    billing_period: BillingPeriod
    billing_cycle_start: Optional[str]
    billing_cycle_end: Optional[str]
    percent_used: float


class TransactionResponse(BaseModel):
    id: int
    action_type: str
    credits_used: int
    balance_after: int
    source_type: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None


class TransactionPage(BaseModel):
    transactions: List[TransactionResponse]
    total: int
    pages: int
    page: int


class ActionCostResponse(BaseModel):
    action_type: str
    credits_per_unit: int
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool


class ActionBudgetResponse(ActionCostResponse):
    """Action cost plus how many more times it can be afforded (-1 = free)."""
    affordable_count: int


class ActionUsage(BaseModel):
    action_type: str
    total_credits: int
    action_count: int


class UsageSummaryResponse(BaseModel):
    account_id: int
    since: str
    total_credits: int
    by_action: List[ActionUsage]


class ReplayResponse(BaseModel):
    account_id: int
    stored_total: int
    replayed_total: int
    consistent: bool


class ActionRequest(BaseModel):
    """Schema for gate check and commit calls."""
    action_type: str = Field(..., min_length=1, max_length=100)
    units: int = Field(1, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class GateDecisionResponse(BaseModel):
    allowed: bool
    cost: int
    bypass_reason: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class CommitResponse(BaseModel):
    committed: bool
    balance: Optional[BalanceResponse] = None


class AdjustBalanceRequest(BaseModel):
    """Operator override of the allowance bucket."""
    amount: int = Field(..., description="Signed credits to add or remove")
    reason: str = Field("", max_length=255)
    operator: Optional[str] = Field(None, max_length=100)


class ActionCostUpdate(BaseModel):
    credits_per_unit: Optional[int] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=255)
    is_active: Optional[bool] = None


class AllocationPage(BaseModel):
    allocations: List[Dict[str, Any]]
    total: int
    pages: int
    page: int


class TierChangeRequest(BaseModel):
    tier: str = Field(..., min_length=1, max_length=50)
    is_upgrade: Optional[bool] = Field(None, description="Derived from tier priority when omitted")
    billing_period: Optional[BillingPeriod] = None


class SyncResponse(BaseModel):
    account_id: int
    changed: bool
    balance: BalanceResponse


class OverageGrantRequest(BaseModel):
    """Verified purchase forwarded by the payment integration."""
    credits: int = Field(..., gt=0)
    reference_id: Optional[str] = Field(None, max_length=255)
    reference_type: str = Field("payment_checkout", max_length=50)
    metadata: Optional[Dict[str, Any]] = None


class CreditPackGrantRequest(BaseModel):
    pack_key: str = Field(..., min_length=1, max_length=50)
    reference_id: Optional[str] = Field(None, max_length=255)
    reference_type: str = Field("payment_checkout", max_length=50)


class TagsModifiedRequest(BaseModel):
    """The account's full, current set of membership tags."""
    tags: List[str] = Field(default_factory=list, max_length=200)


class PlanMappingResponse(BaseModel):
    plan: str
    tier: str
    billing_period: BillingPeriod


class PlanMappingUpdate(BaseModel):
    tier: str = Field(..., min_length=1, max_length=50)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY


class CreditPackResponse(BaseModel):
    pack_key: str
    name: str
    credits: int
    is_active: bool


class CreditPackUpdate(BaseModel):
    """Fields to overwrite; `credits` is required when creating a pack."""
    credits: Optional[int] = Field(None, gt=0)
    name: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None


class PlanEventRequest(BaseModel):
    """Billing-plan lifecycle event."""
    event: str = Field(..., pattern="^(activated|reactivated|upgraded|downgraded|cancelled)$")
    plan: Optional[str] = Field(None, max_length=100)
    previous_plan: Optional[str] = Field(None, max_length=100)
    reference_id: Optional[str] = Field(None, max_length=255)


class SweepReportResponse(BaseModel):
    refilled: int
    skipped: int
    failed: int
    failed_accounts: List[int]


class DeadLetterResponse(BaseModel):
    id: int
    task_name: str
    account_id: Optional[int]
    error_message: str
    payload: Optional[Dict[str, Any]] = None
    status: str
    retry_count: int
    created_at: Optional[str] = None
    last_retry_at: Optional[str] = None
