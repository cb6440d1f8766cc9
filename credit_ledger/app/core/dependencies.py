"""
Service wiring and FastAPI dependencies.

One `CreditServices` bundle is built per storage handle and shared by the
HTTP layer and the sweep script.
"""

from dataclasses import dataclass
from datetime import date

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from credit_ledger.app.core.exceptions import NotProvisionedError
from credit_ledger.app.db.provisioning import ProvisioningStatus, SchemaProvisioner
from credit_ledger.app.domain.credits.budget_reporter import BudgetReporter
from credit_ledger.app.domain.credits.credit_gate import CreditGate
from credit_ledger.app.domain.credits.overage import OverageService
from credit_ledger.app.domain.credits.refill_scheduler import RefillScheduler
from credit_ledger.app.domain.credits.spend_engine import SpendEngine
from credit_ledger.app.domain.credits.tier_resolver import TagTierResolver
from credit_ledger.app.domain.credits.tier_transitions import TierTransitionHandler
from credit_ledger.app.services.account_tags import AccountTagStore
from credit_ledger.app.services.action_catalog import ActionCatalog
from credit_ledger.app.services.allocation_store import AllocationStore
from credit_ledger.app.services.billing_cycle import Today
from credit_ledger.app.services.events import EventBus
from credit_ledger.app.services.pack_catalog import CreditPackCatalog
from credit_ledger.app.services.plan_catalog import PlanTierCatalog


@dataclass
class CreditServices:
    provisioner: SchemaProvisioner
    account_tags: AccountTagStore
    tier_resolver: TagTierResolver
    events: EventBus
    catalog: ActionCatalog
    store: AllocationStore
    engine: SpendEngine
    scheduler: RefillScheduler
    transitions: TierTransitionHandler
    reporter: BudgetReporter
    gate: CreditGate
    overage: OverageService


def build_credit_services(
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker = None,
    tier_resolver=None,
    events: EventBus = None,
    today: Today = date.today,
    catalog_cache_ttl_seconds: float = None,
) -> CreditServices:
    session_factory = session_factory or async_sessionmaker(db_engine, expire_on_commit=False)
    account_tags = AccountTagStore(session_factory)
    # Tiers resolve from the tags the membership integration pushed
    tier_resolver = tier_resolver or TagTierResolver(tag_lookup=account_tags.get)
    events = events or EventBus()

    provisioner = SchemaProvisioner(db_engine)
    catalog = ActionCatalog(session_factory, cache_ttl_seconds=catalog_cache_ttl_seconds)
    plan_catalog = PlanTierCatalog(session_factory, cache_ttl_seconds=catalog_cache_ttl_seconds)
    store = AllocationStore(session_factory, tier_resolver, today=today)
    engine = SpendEngine(session_factory, store, catalog, events)

    return CreditServices(
        provisioner=provisioner,
        account_tags=account_tags,
        tier_resolver=tier_resolver,
        events=events,
        catalog=catalog,
        store=store,
        engine=engine,
        scheduler=RefillScheduler(session_factory, store, events, today=today),
        transitions=TierTransitionHandler(
            session_factory, store, tier_resolver, events, plan_catalog=plan_catalog, today=today
        ),
        reporter=BudgetReporter(session_factory, store, catalog),
        gate=CreditGate(provisioner, engine, tier_resolver),
        overage=OverageService(engine, CreditPackCatalog(session_factory)),
    )


def get_credit_services(request: Request) -> CreditServices:
    """FastAPI dependency: the services bundle built at startup."""
    return request.app.state.credit_services


async def get_provisioned_services(
    services: CreditServices = Depends(get_credit_services),
) -> CreditServices:
    """
    FastAPI dependency for commands that must not be dropped.

    Raises:
        NotProvisionedError: If the ledger tables are not all in place
    """
    provisioning = await services.provisioner.status()
    if provisioning is not ProvisioningStatus.PROVISIONED:
        raise NotProvisionedError(provisioning.value)
    return services
