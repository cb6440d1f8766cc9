"""
Account Tags database model.

Latest membership tags pushed by the membership integration, per account.
"""

from sqlalchemy import Column, Integer, DateTime, JSON
from sqlalchemy.sql import func

from credit_ledger.app.db.session import Base


class AccountTags(Base):
    """
    Account Tags model.

    The tier resolver reads these. An account with no row has never been
    synced, which is different from an account synced with no tags.
    """
    __tablename__ = "credit_account_tags"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, unique=True, index=True, nullable=False)
    tags = Column(JSON, nullable=False, default=list)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<AccountTags(account_id={self.account_id}, tags={self.tags})>"
