"""
Credit Allocation database model.

One row per account holding the three balance buckets and the billing cycle.
"""

from sqlalchemy import Column, Integer, String, Date, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base
from credit_ledger.app.models.credit_enums import BillingPeriod, enum_values


class Allocation(Base):
    """
    Credit Allocation model.

    Buckets are drawn in perishability order: allowance -> rollover -> overage.
    Every mutation bumps `version`; writers compare-and-set on it so two
    concurrent spends can never both commit against the same snapshot.
    Rows are never deleted. Cancellation zeroes the allowance and cap only.
    """
    __tablename__ = "credit_allocations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, unique=True, index=True, nullable=False)

    # Tier
    tier = Column(String(50), nullable=False, default="free", index=True)
    monthly_allowance = Column(Integer, nullable=False, default=0)
    hard_cap = Column(Integer, nullable=False, default=0)  # 0 = uncapped

    # Buckets
    current_balance = Column(Integer, nullable=False, default=0)  # allowance bucket
    rollover_balance = Column(Integer, nullable=False, default=0)
    overage_balance = Column(Integer, nullable=False, default=0)

    # Billing cycle
    billing_period = Column(
        Enum(BillingPeriod, values_callable=enum_values, name="credit_billing_period"),
        default=BillingPeriod.MONTHLY,
        nullable=False,
    )
    billing_cycle_start = Column(Date, nullable=True)
    billing_cycle_end = Column(Date, nullable=True, index=True)

    # Compare-and-set key
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_allocation_current_nonneg"),
        CheckConstraint("rollover_balance >= 0", name="ck_allocation_rollover_nonneg"),
        CheckConstraint("overage_balance >= 0", name="ck_allocation_overage_nonneg"),
        CheckConstraint("monthly_allowance >= 0", name="ck_allocation_allowance_nonneg"),
    )

    @property
    def total_balance(self) -> int:
        return self.current_balance + self.rollover_balance + self.overage_balance

    def __repr__(self):
        return (
            f"<Allocation(account_id={self.account_id}, tier='{self.tier}', "
            f"buckets=({self.current_balance}, {self.rollover_balance}, {self.overage_balance}), "
            f"version={self.version})>"
        )
