"""
Action Cost database model.

Shared catalog of what each credit-consuming action costs.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base


class ActionCost(Base):
    """
    Action Cost model.

    Inactive or zero-cost actions are free and bypass the ledger.
    Admin-editable; individual fields are overwritten atomically.
    """
    __tablename__ = "credit_action_costs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    action_type = Column(String(100), unique=True, index=True, nullable=False)
    credits_per_unit = Column(Integer, nullable=False, default=1)
    description = Column(String(255), nullable=True)
    category = Column(String(50), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ActionCost(action_type='{self.action_type}', credits={self.credits_per_unit}, active={self.is_active})>"
