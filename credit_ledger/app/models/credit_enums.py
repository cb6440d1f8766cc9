"""
Credit ledger enumerations.
"""

import enum


class BillingPeriod(str, enum.Enum):
    """Billing period of an allocation."""
    MONTHLY = "monthly"
    ANNUAL = "annual"  # Eligible for rollover at refill


class SourceType(str, enum.Enum):
    """Where the credits of a transaction came from (or went to)."""
    ALLOWANCE = "allowance"  # Spend touching the monthly allowance
    ROLLOVER = "rollover"  # Spend drawn from rollover
    OVERAGE = "overage"  # Spend drawn from purchased credits, or an overage purchase
    REFILL = "refill"  # Cycle refill or initial seed
    ADJUSTMENT = "adjustment"  # Manual operator override
    ROLLOVER_GRANT = "rollover_grant"  # Carry-forward granted at refill
    SYSTEM = "system"  # Tier transitions and cycle bookkeeping


# Entries that never count as spend in usage summaries
NON_SPEND_SOURCES = (
    SourceType.REFILL,
    SourceType.ADJUSTMENT,
    SourceType.ROLLOVER_GRANT,
    SourceType.SYSTEM,
)


class ActionType:
    """Ledger action types written by the engine itself."""
    ALLOCATION_SEED = "allocation_seed"
    MONTHLY_REFILL = "monthly_refill"
    ROLLOVER_CREDIT = "rollover_credit"
    CYCLE_EXPIRY = "cycle_expiry"
    OVERAGE_PURCHASE = "overage_purchase"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    TIER_UPGRADED = "tier_upgraded"
    TIER_DOWNGRADED = "tier_downgraded"
    PLAN_CANCELLED = "plan_cancelled"


def enum_values(enum_cls):
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]
