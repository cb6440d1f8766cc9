"""
Plan Tier Mapping database model.

Maps billing plan names to membership tiers.
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base


class PlanTierMapping(Base):
    """
    Plan Tier Mapping model.

    `plan` is stored lowercased; lookups match it exactly first, then by
    substring. Admin-editable.
    """
    __tablename__ = "credit_plan_tier_map"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    plan = Column(String(100), unique=True, index=True, nullable=False)
    tier = Column(String(50), nullable=False)
    billing_period = Column(String(20), nullable=False, default="monthly")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<PlanTierMapping(plan='{self.plan}', tier='{self.tier}', period='{self.billing_period}')>"
