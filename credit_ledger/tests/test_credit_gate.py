"""
Credit Gate Tests.

Denial errors, fail-open provisioning and unlimited bypass.
"""

import pytest
from datetime import date

from credit_ledger.app.core.exceptions import (
    HardCapReachedError,
    InsufficientCreditsError,
    StaleAllocationError,
)
from credit_ledger.app.db.provisioning import ProvisioningStatus
from credit_ledger.app.domain.credits.credit_gate import (
    BYPASS_FREE_ACTION,
    BYPASS_NOT_PROVISIONED,
    BYPASS_UNLIMITED,
)

ACCEL_TAG = "mem: guestify accel"
UNLIMITED_TAG = "mem: guestify pos unlimited"


@pytest.mark.asyncio
async def test_hard_cap_denial(services, set_buckets):
    await set_buckets(1, current=0, monthly_allowance=100, hard_cap=300, billing_cycle_end=date(2025, 2, 15))

    decision = await services.gate.check(1, "audience_fit")

    assert decision.allowed is False
    assert isinstance(decision.error, HardCapReachedError)
    assert decision.error.refill_date == "2025-02-15"
    with pytest.raises(HardCapReachedError):
        decision.raise_for_denial()


@pytest.mark.asyncio
async def test_insufficient_denial_carries_details(services, set_buckets, account_tags):
    account_tags[1] = [ACCEL_TAG]
    await set_buckets(1, current=2)

    decision = await services.gate.check(1, "deep_show_intel")

    assert decision.allowed is False
    assert isinstance(decision.error, InsufficientCreditsError)
    assert decision.error.shortfall == 3
    details = decision.error.details
    assert details["cost"] == 5
    assert details["balance"]["total"] == 2
    assert details["upgrade_target"] == "velocity"
    assert decision.error.status_code == 402


@pytest.mark.asyncio
async def test_require_raises_denial(services):
    with pytest.raises(InsufficientCreditsError):
        await services.gate.require(1, "bulk_scan")


@pytest.mark.asyncio
async def test_check_never_mutates_balances(services, account_tags):
    account_tags[1] = [ACCEL_TAG]

    decision = await services.gate.check(1, "bulk_scan", units=3)

    assert decision.allowed is True
    assert decision.cost == 30
    assert (await services.store.get(1)).current_balance == 300


@pytest.mark.asyncio
async def test_check_then_commit(services, account_tags):
    account_tags[1] = [ACCEL_TAG]

    assert (await services.gate.check(1, "host_enrichment")).allowed is True
    assert await services.gate.commit(1, "host_enrichment", metadata={"podcast_id": 42}) is True

    assert (await services.store.get(1)).current_balance == 297


@pytest.mark.asyncio
async def test_commit_rechecks_affordability(services, set_buckets, account_tags):
    account_tags[1] = [ACCEL_TAG]
    await set_buckets(1, current=6)
    assert (await services.gate.check(1, "deep_show_intel")).allowed is True

    # Balance moved between check and commit
    await services.engine.spend(1, "personalized_pitch")

    assert await services.gate.commit(1, "deep_show_intel") is False
    assert (await services.store.get(1)).current_balance == 4


@pytest.mark.asyncio
async def test_free_action_bypass(services):
    decision = await services.gate.check(1, "unknown_action")
    assert decision.allowed is True
    assert decision.bypass_reason == BYPASS_FREE_ACTION


@pytest.mark.asyncio
async def test_unlimited_tier_bypasses_ledger(services, account_tags):
    account_tags[1] = [UNLIMITED_TAG, ACCEL_TAG]

    decision = await services.gate.check(1, "bulk_scan", units=1000)
    assert decision.allowed is True
    assert decision.bypass_reason == BYPASS_UNLIMITED

    assert await services.gate.commit(1, "bulk_scan", units=1000) is True
    assert await services.store.get(1) is None


@pytest.mark.asyncio
async def test_fails_open_when_schema_missing(services):
    await services.provisioner.drop_tables()
    assert await services.provisioner.status() == ProvisioningStatus.MISSING

    decision = await services.gate.check(1, "bulk_scan")
    assert decision.allowed is True
    assert decision.bypass_reason == BYPASS_NOT_PROVISIONED

    assert await services.gate.commit(1, "bulk_scan") is False


@pytest.mark.asyncio
async def test_fails_open_when_schema_partial(services, db_session):
    from sqlalchemy import text
    await db_session.execute(text("DROP TABLE credit_transactions"))
    await db_session.commit()

    assert await services.provisioner.status() == ProvisioningStatus.PARTIAL
    assert (await services.gate.check(1, "bulk_scan")).allowed is True
    assert await services.gate.commit(1, "bulk_scan") is False


@pytest.mark.asyncio
async def test_provisioning_recovers_after_create(services):
    await services.provisioner.drop_tables()
    assert await services.provisioner.create_tables() is True
    assert await services.provisioner.status() == ProvisioningStatus.PROVISIONED
    assert await services.catalog.cost("deep_show_intel") == 5


@pytest.mark.asyncio
async def test_commit_retries_once_on_stale_allocation(services, mocker):
    spend = mocker.patch.object(
        services.engine, "spend", side_effect=[StaleAllocationError(1, 3), True]
    )

    assert await services.gate.commit(1, "audience_fit") is True
    assert spend.call_count == 2


@pytest.mark.asyncio
async def test_commit_gives_up_after_second_stale(services, mocker):
    mocker.patch.object(
        services.engine,
        "spend",
        side_effect=[StaleAllocationError(1, 3), StaleAllocationError(1, 4)],
    )

    with pytest.raises(StaleAllocationError):
        await services.gate.commit(1, "audience_fit")


@pytest.mark.asyncio
async def test_hard_cap_upgrade_target_skips_unlimited(services, set_buckets, account_tags):
    account_tags[1] = ["mem: guestify zenith"]
    await set_buckets(1, current=0)

    decision = await services.gate.check(1, "audience_fit")

    assert isinstance(decision.error, HardCapReachedError)
    assert decision.error.details["upgrade_target"] is None
