"""
Centralized Test Configuration.
"""

import pytest
from datetime import date, timedelta
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event, update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from credit_ledger.app.main import app
from credit_ledger.app.core.dependencies import build_credit_services
from credit_ledger.app.db.provisioning import SchemaProvisioner
from credit_ledger.app.db.session import Base
from credit_ledger.app.domain.credits.tier_resolver import TagTierResolver, tag_lookup_from_mapping
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.services.billing_cycle import add_months

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class FakeClock:
    """Settable `today` for billing-cycle tests."""

    def __init__(self, today: date):
        self.current = today

    def __call__(self) -> date:
        return self.current

    def advance(self, months: int = 0, days: int = 0) -> date:
        self.current = add_months(self.current, months) + timedelta(days=days)
        return self.current


# Mock Redis for event publishing tests
class MockRedis:
    def __init__(self):
        self.published = []
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def publish(self, channel, message):
        if self._closed:
            raise ConnectionError("Redis connection closed")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self._closed = True


@pytest.fixture
def redis_client():
    return MockRedis()


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables and seed the catalogs before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await SchemaProvisioner(engine).seed_catalogs()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def clock():
    return FakeClock(date(2025, 1, 15))


@pytest.fixture
def account_tags():
    """Mutable account -> membership tags mapping behind the tier resolver."""
    return {}


@pytest.fixture
def services(clock, account_tags):
    resolver = TagTierResolver(tag_lookup=tag_lookup_from_mapping(account_tags))
    return build_credit_services(
        engine,
        session_factory=TestingSessionLocal,
        tier_resolver=resolver,
        today=clock,
        catalog_cache_ttl_seconds=0,
    )


@pytest.fixture
def wired_services(clock):
    """Services built the way the application lifespan builds them."""
    return build_credit_services(
        engine,
        session_factory=TestingSessionLocal,
        today=clock,
        catalog_cache_ttl_seconds=0,
    )


@pytest.fixture
def set_buckets(services):
    """
    Force an allocation into a given state, bypassing the ledger.

    Tests using it must not assert ledger replay.
    """
    async def _set(account_id: int, current: int, rollover: int = 0, overage: int = 0, **fields):
        await services.store.get_or_create(account_id)
        async with TestingSessionLocal() as session:
            async with session.begin():
                await session.execute(
                    update(Allocation)
                    .where(Allocation.account_id == account_id)
                    .values(
                        current_balance=current,
                        rollover_balance=rollover,
                        overage_balance=overage,
                        **fields,
                    )
                )
        return await services.store.get(account_id)

    return _set


@pytest.fixture
async def client(services):
    """Async client for testing."""
    app.state.credit_services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.credit_services


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
async def wired_client(wired_services):
    """Async client over the lifespan-style wiring."""
    app.state.credit_services = wired_services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.credit_services
