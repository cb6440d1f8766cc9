"""
Spend Engine Tests.

Draw order, source attribution, affordability and grants.
"""

import pytest

from credit_ledger.app.domain.credits.spend_engine import (
    REASON_HARD_CAP,
    REASON_INSUFFICIENT,
    plan_draw,
)
from credit_ledger.app.models.credit_enums import ActionType, SourceType
from credit_ledger.app.services import ledger

ACCEL_TAG = "mem: guestify accel"


async def _entries(db_session, account_id):
    return await ledger.get_entries_in_order(db_session, account_id)


def test_plan_draw_takes_most_perishable_first():
    draw = plan_draw(6, allowance=5, rollover=3, overage=10)
    assert (draw.from_allowance, draw.from_rollover, draw.from_overage) == (5, 1, 0)
    assert draw.unsatisfied == 0

    short = plan_draw(20, allowance=5, rollover=3, overage=10)
    assert short.unsatisfied == 2


@pytest.mark.asyncio
async def test_draw_order_spend_six(services, set_buckets):
    await set_buckets(1, current=5, rollover=3, overage=10)

    assert await services.engine.spend(1, "audience_fit", units=6) is True

    allocation = await services.store.get(1)
    assert (allocation.current_balance, allocation.rollover_balance, allocation.overage_balance) == (0, 2, 10)


@pytest.mark.asyncio
async def test_draw_order_spend_nine(services, set_buckets, db_session):
    await set_buckets(1, current=5, rollover=3, overage=10)

    assert await services.engine.spend(1, "audience_fit", units=9) is True

    allocation = await services.store.get(1)
    assert (allocation.current_balance, allocation.rollover_balance, allocation.overage_balance) == (0, 0, 9)

    entry = (await _entries(db_session, 1))[-1]
    assert entry.credits_used == 9
    assert entry.balance_after == 9
    assert entry.source_type == SourceType.ALLOWANCE
    assert entry.meta_data["from_allowance"] == 5
    assert entry.meta_data["from_rollover"] == 3
    assert entry.meta_data["from_overage"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "buckets, units, expected_source",
    [
        ((4, 0, 0), 3, SourceType.ALLOWANCE),
        ((0, 5, 0), 3, SourceType.ROLLOVER),
        ((0, 2, 5), 4, SourceType.ROLLOVER),
        ((0, 0, 5), 3, SourceType.OVERAGE),
    ],
)
async def test_source_type_reflects_buckets_touched(services, set_buckets, db_session, buckets, units, expected_source):
    await set_buckets(1, *buckets)

    assert await services.engine.spend(1, "audience_fit", units=units) is True

    entry = (await _entries(db_session, 1))[-1]
    assert entry.source_type == expected_source


@pytest.mark.asyncio
async def test_insufficient_spend_changes_nothing(services, set_buckets, db_session):
    await set_buckets(1, current=2, rollover=1, overage=0)
    before = len(await _entries(db_session, 1))

    assert await services.engine.spend(1, "deep_show_intel") is False

    allocation = await services.store.get(1)
    assert (allocation.current_balance, allocation.rollover_balance) == (2, 1)
    assert len(await _entries(db_session, 1)) == before


@pytest.mark.asyncio
async def test_free_and_unknown_actions_bypass_ledger(services):
    assert await services.engine.spend(7, "not_a_real_action") is True
    await services.catalog.update("audience_fit", credits_per_unit=0)
    assert await services.engine.spend(7, "audience_fit", units=3) is True

    # Nothing touched the store
    assert await services.store.get(7) is None


@pytest.mark.asyncio
async def test_inactive_action_is_free(services, set_buckets):
    await set_buckets(1, current=0)
    await services.catalog.update("bulk_scan", is_active=False)

    affordability = await services.engine.affordability(1, "bulk_scan")
    assert affordability.allowed is True
    assert affordability.cost == 0


@pytest.mark.asyncio
async def test_affordability_hard_cap_reached(services, set_buckets, clock):
    allocation = await set_buckets(1, current=0, monthly_allowance=100, hard_cap=300)

    affordability = await services.engine.affordability(1, "audience_fit")

    assert affordability.allowed is False
    assert affordability.reason == REASON_HARD_CAP
    assert affordability.refill_date == allocation.billing_cycle_end


@pytest.mark.asyncio
async def test_affordability_insufficient_carries_shortfall(services, set_buckets):
    await set_buckets(1, current=1, rollover=1, monthly_allowance=100, hard_cap=300)

    affordability = await services.engine.affordability(1, "deep_show_intel")

    assert affordability.allowed is False
    assert affordability.reason == REASON_INSUFFICIENT
    assert affordability.shortfall == 3


@pytest.mark.asyncio
async def test_uncapped_empty_account_is_insufficient_not_capped(services):
    # Free tier: no allowance and no hard cap
    affordability = await services.engine.affordability(1, "audience_fit")

    assert affordability.allowed is False
    assert affordability.reason == REASON_INSUFFICIENT


@pytest.mark.asyncio
async def test_spend_then_equal_grant_conserves_total(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    before = (await services.store.get_or_create(1)).total_balance

    assert await services.engine.spend(1, "deep_show_intel") is True
    assert await services.engine.grant_overage(1, 5) is True

    assert (await services.store.get(1)).total_balance == before


@pytest.mark.asyncio
async def test_grant_overage_records_negative_entry(services, db_session):
    await services.engine.grant_overage(
        1, 300, {"reference_id": "cs_test_123", "reference_type": "payment_checkout"}
    )

    allocation = await services.store.get(1)
    assert allocation.overage_balance == 300

    entry = (await _entries(db_session, 1))[-1]
    assert entry.action_type == ActionType.OVERAGE_PURCHASE
    assert entry.credits_used == -300
    assert entry.source_type == SourceType.OVERAGE
    assert entry.reference_id == "cs_test_123"
    assert entry.balance_after == 300


@pytest.mark.asyncio
async def test_grant_overage_rejects_non_positive(services):
    with pytest.raises(ValueError):
        await services.engine.grant_overage(1, 0)


@pytest.mark.asyncio
async def test_adjust_balance_floors_at_zero(services, account_tags, db_session):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)

    allocation = await services.engine.adjust_balance(1, -500, reason="abuse", operator="ops@example.com")

    assert allocation.current_balance == 0
    entry = (await _entries(db_session, 1))[-1]
    assert entry.source_type == SourceType.ADJUSTMENT
    assert entry.credits_used == 300  # only what was actually removed
    assert entry.meta_data["requested_amount"] == -500
    assert entry.meta_data["operator"] == "ops@example.com"


@pytest.mark.asyncio
async def test_adjust_balance_only_touches_allowance(services, set_buckets):
    await set_buckets(1, current=10, rollover=4, overage=6)

    allocation = await services.engine.adjust_balance(1, 25, reason="goodwill")

    assert (allocation.current_balance, allocation.rollover_balance, allocation.overage_balance) == (35, 4, 6)


@pytest.mark.asyncio
async def test_adjust_balance_rejects_zero(services):
    with pytest.raises(ValueError):
        await services.engine.adjust_balance(1, 0)


@pytest.mark.asyncio
async def test_ledger_replay_matches_total(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)

    await services.engine.spend(1, "deep_show_intel", units=2)
    await services.engine.grant_overage(1, 100)
    await services.engine.adjust_balance(1, -40, reason="correction")
    await services.engine.spend(1, "bulk_scan", units=30)

    replay = await services.reporter.replay_total(1)
    assert replay["consistent"] is True
    assert replay["replayed_total"] == (await services.store.get(1)).total_balance


@pytest.mark.asyncio
async def test_balance_after_chain_is_continuous(services, account_tags, db_session):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)
    await services.engine.spend(1, "host_enrichment")
    await services.engine.grant_overage(1, 50)
    await services.engine.spend(1, "audience_fit", units=4)

    running = 0
    for entry in await _entries(db_session, 1):
        running -= entry.credits_used
        assert entry.balance_after == running


@pytest.mark.asyncio
async def test_spend_publishes_event(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    received = []

    async def subscriber(event):
        received.append(event)

    services.events.subscribe(subscriber)
    await services.engine.spend(1, "personalized_pitch")

    assert [event.name for event in received] == ["credits.spent"]
    assert received[0].payload["cost"] == 2
    assert received[0].payload["balance_after"] == 298
