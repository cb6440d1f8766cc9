"""
Account Tag Store.

Holds the membership tags last pushed for each account. The tier resolver
uses `get` as its tag source.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.account_tags import AccountTags

logger = logging.getLogger(__name__)


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Strip blanks and duplicates, keeping first-seen order."""
    seen = []
    for tag in tags:
        tag = (tag or "").strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class AccountTagStore:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, account_id: int) -> Optional[List[str]]:
        """
        Tags on record for an account.

        Returns:
            The stored tags, or None if the account has never been synced
        """
        async def _load(session: AsyncSession) -> Optional[List[str]]:
            result = await session.execute(
                select(AccountTags.tags).where(AccountTags.account_id == account_id)
            )
            tags = result.scalar_one_or_none()
            return None if tags is None else list(tags)

        return await run_in_transaction(self.session_factory, _load)

    async def replace(self, account_id: int, tags: Iterable[str]) -> List[str]:
        """Overwrite the account's tags with the full current set."""
        cleaned = normalize_tags(tags)

        async def _replace(session: AsyncSession) -> None:
            result = await session.execute(
                select(AccountTags).where(AccountTags.account_id == account_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(AccountTags(account_id=account_id, tags=cleaned))
            else:
                row.tags = cleaned
            await session.flush()

        try:
            await run_in_transaction(self.session_factory, _replace)
        except IntegrityError:
            # Lost the insert race; the row exists now
            await run_in_transaction(self.session_factory, _replace)

        logger.info("Account tags replaced", extra={"account_id": account_id, "tag_count": len(cleaned)})
        return cleaned
