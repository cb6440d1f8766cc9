"""
Credit Transaction database model.

Immutable audit trail of every balance mutation.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, JSON, Index
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base
from credit_ledger.app.models.credit_enums import SourceType, enum_values


class CreditTransaction(Base):
    """
    Credit Transaction model.

    Sign convention: positive `credits_used` = consumed, negative = granted.
    Summing `credits_used` over a window therefore yields net consumption.
    `balance_after` snapshots the allocation total right after the entry.
    NO updates or deletions allowed.
    """
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Linkage
    allocation_id = Column(Integer, ForeignKey('credit_allocations.id'), nullable=False, index=True)
    account_id = Column(Integer, nullable=False, index=True)

    # Entry details
    action_type = Column(String(100), nullable=False, index=True)
    credits_used = Column(Integer, nullable=False, default=0)
    balance_after = Column(Integer, nullable=False, default=0)
    source_type = Column(
        Enum(SourceType, values_callable=enum_values, name="credit_source_type"),
        nullable=False,
        default=SourceType.ALLOWANCE,
        index=True,
    )

    # External reference (payment session, operator, plan event)
    reference_id = Column(String(100), nullable=True)
    reference_type = Column(String(50), nullable=True)
    meta_data = Column("metadata", JSON, nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
        Index("ix_credit_transactions_reference", "reference_type", "reference_id"),
    )

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, action='{self.action_type}', "
            f"credits_used={self.credits_used}, source='{self.source_type.value}')>"
        )
