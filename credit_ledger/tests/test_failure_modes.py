"""
Failure Injection Tests.

Validates resilience against store and subscriber failures.
"""

import asyncio
import json

import pytest

from credit_ledger.app.core.exceptions import StoreTimeoutError
from credit_ledger.app.core.reliability import with_store_timeout
from credit_ledger.app.db.session import run_in_transaction
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.services.events import CreditEvent, EventBus, RedisEventPublisher

ACCEL_TAG = "mem: guestify accel"


@pytest.mark.asyncio
async def test_store_timeout_raises():
    async def slow_call():
        await asyncio.sleep(1)

    with pytest.raises(StoreTimeoutError) as exc_info:
        await with_store_timeout(slow_call(), 0.01)

    assert exc_info.value.status_code == 504
    assert exc_info.value.details["timeout_seconds"] == 0.01


@pytest.mark.asyncio
async def test_store_timeout_disabled_when_non_positive():
    async def quick_call():
        return "ok"

    assert await with_store_timeout(quick_call(), 0) == "ok"


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_on_error(services):
    async def failing_work(session):
        session.add(Allocation(account_id=77, tier="free"))
        await session.flush()
        raise RuntimeError("Boom")

    with pytest.raises(RuntimeError):
        await run_in_transaction(services.store.session_factory, failing_work)

    assert await services.store.get(77) is None


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_undo_spend(services, account_tags):
    account_tags[1] = [ACCEL_TAG]

    async def broken_subscriber(event):
        raise ConnectionError("analytics down")

    services.events.subscribe(broken_subscriber)

    assert await services.engine.spend(1, "deep_show_intel") is True
    assert (await services.store.get(1)).current_balance == 295


@pytest.mark.asyncio
async def test_event_bus_keeps_delivering_after_failure():
    bus = EventBus()
    delivered = []

    async def broken(event):
        raise RuntimeError("nope")

    async def healthy(event):
        delivered.append(event.name)

    bus.subscribe(broken)
    bus.subscribe(healthy)
    await bus.publish(CreditEvent(name="credits.spent", account_id=1))

    assert delivered == ["credits.spent"]


@pytest.mark.asyncio
async def test_redis_publisher_forwards_json(redis_client):
    publisher = RedisEventPublisher(redis_client, channel="test:events")

    await publisher(CreditEvent(name="credits.spent", account_id=3, payload={"cost": 5}))

    [(channel, message)] = redis_client.published
    assert channel == "test:events"
    body = json.loads(message)
    assert body["name"] == "credits.spent"
    assert body["account_id"] == 3
    assert body["payload"] == {"cost": 5}


@pytest.mark.asyncio
async def test_redis_outage_is_contained(services, account_tags, redis_client):
    account_tags[1] = [ACCEL_TAG]
    await redis_client.aclose()
    services.events.subscribe(RedisEventPublisher(redis_client))

    assert await services.engine.grant_overage(1, 100) is True
    assert (await services.store.get(1)).overage_balance == 100
