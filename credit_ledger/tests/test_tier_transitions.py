"""
Tier Transition Handler Tests.
"""

import pytest

from credit_ledger.app.core.exceptions import UnknownPlanError, UnknownTierError
from credit_ledger.app.domain.credits.tier_transitions import CANCELLED_TIER
from credit_ledger.app.models.credit_enums import ActionType, BillingPeriod, SourceType
from credit_ledger.app.services import ledger
from credit_ledger.app.services.billing_cycle import add_months

ACCEL_TAG = "mem: guestify accel"
VELOCITY_TAG = "mem: guestify velocity"
UNLIMITED_TAG = "mem: guestify pos unlimited"


@pytest.mark.asyncio
async def test_downgrade_caps_balance(services, set_buckets, account_tags):
    account_tags[1] = [VELOCITY_TAG]
    await set_buckets(1, current=800, rollover=40, overage=60)

    allocation = await services.transitions.apply_tier_change(1, "accelerator", is_upgrade=False)

    assert allocation.tier == "accelerator"
    assert allocation.current_balance == 300
    assert allocation.monthly_allowance == 300
    assert allocation.hard_cap == 900
    assert (allocation.rollover_balance, allocation.overage_balance) == (40, 60)


@pytest.mark.asyncio
async def test_downgrade_never_increases_balance(services, set_buckets, account_tags):
    account_tags[1] = [VELOCITY_TAG]
    await set_buckets(1, current=100)

    allocation = await services.transitions.apply_tier_change(1, "accelerator", is_upgrade=False)

    assert allocation.current_balance == 100


@pytest.mark.asyncio
async def test_upgrade_grants_full_allowance_immediately(services, set_buckets, account_tags, clock):
    account_tags[1] = [ACCEL_TAG]
    before = await set_buckets(1, current=10)

    allocation = await services.transitions.apply_tier_change(1, "velocity", is_upgrade=True)

    assert allocation.current_balance == 1200
    assert allocation.hard_cap == 3600
    # Cycle dates untouched unless asked
    assert allocation.billing_cycle_end == before.billing_cycle_end


@pytest.mark.asyncio
async def test_transition_records_system_entry(services, account_tags, db_session):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)

    await services.transitions.apply_tier_change(1, "velocity", is_upgrade=True)

    entry = (await ledger.get_entries_in_order(db_session, 1))[-1]
    assert entry.action_type == ActionType.TIER_UPGRADED
    assert entry.source_type == SourceType.SYSTEM
    assert entry.credits_used == -900
    assert entry.meta_data["old_tier"] == "accelerator"
    assert entry.meta_data["new_tier"] == "velocity"
    assert (await services.reporter.replay_total(1))["consistent"] is True


@pytest.mark.asyncio
async def test_unlimited_tier_stores_zero_allowance(services, account_tags):
    account_tags[1] = [ACCEL_TAG]

    allocation = await services.transitions.apply_tier_change(1, "unlimited", is_upgrade=True)

    assert allocation.monthly_allowance == 0
    assert allocation.hard_cap == 0


@pytest.mark.asyncio
async def test_unknown_tier_raises(services):
    with pytest.raises(UnknownTierError):
        await services.transitions.apply_tier_change(1, "platinum", is_upgrade=True)


@pytest.mark.asyncio
async def test_cancellation_preserves_balance(services, account_tags, db_session, clock):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)
    await services.engine.spend(1, "deep_show_intel")

    allocation = await services.transitions.handle_cancellation(1)

    assert allocation.tier == CANCELLED_TIER
    assert allocation.monthly_allowance == 0
    assert allocation.hard_cap == 0
    assert allocation.current_balance == 295

    entry = (await ledger.get_entries_in_order(db_session, 1))[-1]
    assert entry.action_type == ActionType.PLAN_CANCELLED
    assert entry.credits_used == 0
    assert entry.meta_data["previous_tier"] == "accelerator"
    assert entry.meta_data["remaining_balance"] == 295

    # Still spendable until the cycle ends
    assert await services.engine.spend(1, "audience_fit") is True

    # The next refill grants nothing
    clock.advance(months=1)
    await services.scheduler.refill(1)
    assert (await services.store.get(1)).current_balance == 0
    assert (await services.reporter.replay_total(1))["consistent"] is True


@pytest.mark.asyncio
async def test_cancellation_without_allocation(services):
    assert await services.transitions.handle_cancellation(99) is None
    assert await services.store.get(99) is None


@pytest.mark.asyncio
async def test_upgrade_direction_from_priority(services):
    transitions = services.transitions
    assert transitions.is_upgrade("accelerator", "velocity") is True
    assert transitions.is_upgrade("zenith", "free") is False
    assert transitions.is_upgrade(CANCELLED_TIER, "accelerator") is True


@pytest.mark.asyncio
async def test_reconcile_applies_tag_changes(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)
    await services.engine.spend(1, "bulk_scan")

    assert await services.transitions.reconcile(1) is False

    account_tags[1] = [VELOCITY_TAG]
    assert await services.transitions.reconcile(1) is True
    allocation = await services.store.get(1)
    assert (allocation.tier, allocation.current_balance) == ("velocity", 1200)

    account_tags[1] = []
    assert await services.transitions.reconcile(1) is True
    allocation = await services.store.get(1)
    assert (allocation.tier, allocation.current_balance) == ("free", 0)


@pytest.mark.asyncio
async def test_reconcile_without_tags_on_record_keeps_tier(services, account_tags):
    account_tags[1] = [VELOCITY_TAG]
    await services.store.get_or_create(1)
    del account_tags[1]

    assert await services.transitions.reconcile(1) is False
    allocation = await services.store.get(1)
    assert (allocation.tier, allocation.current_balance) == ("velocity", 1200)


@pytest.mark.asyncio
async def test_reconcile_prefers_given_tags(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    await services.store.get_or_create(1)

    assert await services.transitions.reconcile(1, tags=[VELOCITY_TAG]) is True
    assert (await services.store.get(1)).tier == "velocity"


@pytest.mark.asyncio
async def test_leaving_unlimited_grants_new_allowance(services, account_tags):
    """An unlimited account holds no allowance, so moving down is a fresh grant."""
    account_tags[1] = [UNLIMITED_TAG]
    created = await services.store.get_or_create(1)
    assert created.current_balance == 0

    account_tags[1] = [VELOCITY_TAG]
    assert await services.transitions.reconcile(1) is True

    allocation = await services.store.get(1)
    assert (allocation.tier, allocation.current_balance, allocation.hard_cap) == ("velocity", 1200, 3600)
    assert (await services.gate.check(1, "bulk_scan")).allowed is True
    assert (await services.reporter.replay_total(1))["consistent"] is True


@pytest.mark.asyncio
async def test_reconcile_creates_missing_allocation(services, account_tags):
    account_tags[5] = [VELOCITY_TAG]

    assert await services.transitions.reconcile(5) is True
    assert (await services.store.get(5)).current_balance == 1200


@pytest.mark.asyncio
async def test_resolve_plan_exact_and_fuzzy(services):
    assert (await services.transitions.resolve_plan("Starter")).tier == "accelerator"
    fuzzy = await services.transitions.resolve_plan("Professional Annual")
    assert (fuzzy.plan, fuzzy.tier) == ("professional", "velocity")
    assert (await services.transitions.resolve_plan(" enterprise ")).billing_period == BillingPeriod.ANNUAL

    with pytest.raises(UnknownPlanError):
        await services.transitions.resolve_plan("mystery plan")
    with pytest.raises(UnknownPlanError):
        await services.transitions.resolve_plan("")


@pytest.mark.asyncio
async def test_plan_activation_resets_cycle(services, clock):
    clock.advance(days=10)

    allocation = await services.transitions.handle_plan_activated(1, "enterprise", reference_id="sub_1")

    assert allocation.tier == "zenith"
    assert allocation.billing_period == BillingPeriod.ANNUAL
    assert allocation.current_balance == 4000
    assert allocation.billing_cycle_start == clock()
    assert allocation.billing_cycle_end == add_months(clock(), 1)


@pytest.mark.asyncio
async def test_plan_downgrade_keeps_cycle(services, clock):
    activated = await services.transitions.handle_plan_activated(1, "professional")
    clock.advance(days=5)

    allocation = await services.transitions.handle_plan_downgraded(1, "professional", "starter")

    assert allocation.tier == "accelerator"
    assert allocation.current_balance == 300
    assert allocation.billing_cycle_end == activated.billing_cycle_end


@pytest.mark.asyncio
async def test_tier_change_publishes_event(services, account_tags):
    account_tags[1] = [ACCEL_TAG]
    received = []

    async def subscriber(event):
        received.append(event)

    services.events.subscribe(subscriber)
    await services.transitions.apply_tier_change(1, "velocity", is_upgrade=True)

    assert received[-1].name == "credits.tier_changed"
    assert received[-1].payload["old_tier"] == "accelerator"


@pytest.mark.asyncio
async def test_plan_mapping_edits_take_effect(services):
    saved = await services.transitions.save_plan_mapping("Agency", "zenith", BillingPeriod.ANNUAL)
    assert saved == {"plan": "agency", "tier": "zenith", "billing_period": "annual"}

    allocation = await services.transitions.handle_plan_activated(1, "Agency Annual")
    assert (allocation.tier, allocation.current_balance) == ("zenith", 4000)

    await services.transitions.save_plan_mapping("starter", "velocity")
    assert (await services.transitions.resolve_plan("starter")).tier == "velocity"

    await services.transitions.remove_plan_mapping("agency")
    with pytest.raises(UnknownPlanError):
        await services.transitions.resolve_plan("agency")


@pytest.mark.asyncio
async def test_plan_mapping_rejects_unknown_tier(services):
    with pytest.raises(UnknownTierError):
        await services.transitions.save_plan_mapping("agency", "platinum")
    with pytest.raises(UnknownPlanError):
        await services.transitions.remove_plan_mapping("agency")
