"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from credit_ledger.app.core.config import settings
from credit_ledger.app.core.reliability import with_store_timeout

T = TypeVar("T")

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    future=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()


async def run_in_transaction(
    session_factory: async_sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    timeout: Optional[float] = None,
) -> T:
    """
    Run `work` inside a single database transaction.

    The transaction commits only if `work` returns normally; any exception
    (including the store timeout) rolls back every write made by `work`.

    Args:
        session_factory: Session factory owning the storage handle
        work: Coroutine function receiving the open session
        timeout: Seconds before the unit of work is abandoned

    Returns:
        Whatever `work` returns
    """
    async def _unit_of_work() -> T:
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    seconds = settings.store_timeout_seconds if timeout is None else timeout
    return await with_store_timeout(_unit_of_work(), seconds)
