"""
Credit Pack database model.

Fixed bundles of overage credits sold through the payment integration.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, CheckConstraint
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base


class CreditPack(Base):
    """
    Credit Pack model.

    Inactive packs stay listed for operators but cannot be granted.
    """
    __tablename__ = "credit_packs"
    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_credit_packs_credits_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    pack_key = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    credits = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<CreditPack(pack_key='{self.pack_key}', credits={self.credits}, active={self.is_active})>"
