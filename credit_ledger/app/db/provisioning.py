"""
Credit ledger schema provisioning.

Creates the ledger tables, seeds the default action costs, plan tier map
and credit packs, and reports whether the schema is in place.
"""

import enum
import logging
from typing import Dict, List, Optional

from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from credit_ledger.app.db.session import Base
from credit_ledger.app.models.account_tags import AccountTags
from credit_ledger.app.models.action_cost import ActionCost
from credit_ledger.app.models.allocation import Allocation
from credit_ledger.app.models.credit_pack import CreditPack
from credit_ledger.app.models.dlq import DeadLetterQueue
from credit_ledger.app.models.plan_tier import PlanTierMapping
from credit_ledger.app.models.transaction import CreditTransaction

logger = logging.getLogger(__name__)

LEDGER_TABLES = (
    Allocation.__tablename__,
    CreditTransaction.__tablename__,
    ActionCost.__tablename__,
    AccountTags.__tablename__,
    PlanTierMapping.__tablename__,
    CreditPack.__tablename__,
)

# Seeded on first install, admin-editable afterwards
DEFAULT_ACTION_COSTS: Dict[str, Dict] = {
    "deep_show_intel": {"credits": 5, "description": "Deep Show Intelligence Analysis", "category": "ai"},
    "host_enrichment": {"credits": 3, "description": "Host Profile Enrichment", "category": "enrichment"},
    "audience_fit": {"credits": 1, "description": "Audience Fit Score", "category": "ai"},
    "ai_positioning_rewrite": {"credits": 4, "description": "AI Positioning Rewrite", "category": "ai"},
    "personalized_pitch": {"credits": 2, "description": "Personalized Pitch Generation", "category": "ai"},
    "relationship_refresh": {"credits": 1, "description": "Relationship Refresh Analysis", "category": "ai"},
    "bulk_scan": {"credits": 10, "description": "Bulk Podcast Scan", "category": "ai"},
}

DEFAULT_PLAN_TIER_MAP: Dict[str, Dict[str, str]] = {
    "starter": {"tier": "accelerator", "billing_period": "monthly"},
    "professional": {"tier": "velocity", "billing_period": "monthly"},
    "enterprise": {"tier": "zenith", "billing_period": "annual"},
    "free": {"tier": "free", "billing_period": "monthly"},
}

DEFAULT_CREDIT_PACKS: Dict[str, Dict] = {
    "small": {"credits": 100, "name": "100 Credits"},
    "medium": {"credits": 300, "name": "300 Credits"},
    "large": {"credits": 1000, "name": "1,000 Credits"},
}


class ProvisioningStatus(str, enum.Enum):
    """Whether the ledger tables exist."""
    PROVISIONED = "PROVISIONED"  # every ledger table exists
    PARTIAL = "PARTIAL"  # some, but not all
    MISSING = "MISSING"  # none


class SchemaProvisioner:
    """
    Owns the ledger schema lifecycle for one engine.

    Once the schema is seen as PROVISIONED the result is remembered, so the
    credit gate does not inspect the database on every request.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._known_status: Optional[ProvisioningStatus] = None

    async def status(self) -> ProvisioningStatus:
        if self._known_status is ProvisioningStatus.PROVISIONED:
            return self._known_status

        async with self.engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

        present = [table for table in LEDGER_TABLES if table in existing]
        if len(present) == len(LEDGER_TABLES):
            result = ProvisioningStatus.PROVISIONED
            self._known_status = result
        elif present:
            result = ProvisioningStatus.PARTIAL
        else:
            result = ProvisioningStatus.MISSING
        return result

    async def create_tables(self) -> bool:
        """
        Create every credit ledger table and seed the catalogs.

        Returns:
            Whether all ledger tables exist afterwards
        """
        tables = [
            Base.metadata.tables[name]
            for name in (*LEDGER_TABLES, DeadLetterQueue.__tablename__)
        ]
        async with self.engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))

        self._known_status = None
        ready = await self.status() is ProvisioningStatus.PROVISIONED
        if ready:
            await self.seed_catalogs()
        logger.info("Credit ledger schema provisioned", extra={"ready": ready})
        return ready

    async def seed_catalogs(self) -> Dict[str, int]:
        """Seed each empty catalog with its defaults. Returns rows inserted per table."""
        seeded = {
            ActionCost.__tablename__: await self._seed_if_empty(ActionCost, [
                ActionCost(
                    action_type=action_type,
                    credits_per_unit=config["credits"],
                    description=config["description"],
                    category=config["category"],
                    is_active=True,
                )
                for action_type, config in DEFAULT_ACTION_COSTS.items()
            ]),
            PlanTierMapping.__tablename__: await self._seed_if_empty(PlanTierMapping, [
                PlanTierMapping(plan=plan, tier=config["tier"], billing_period=config["billing_period"])
                for plan, config in DEFAULT_PLAN_TIER_MAP.items()
            ]),
            CreditPack.__tablename__: await self._seed_if_empty(CreditPack, [
                CreditPack(pack_key=pack_key, name=config["name"], credits=config["credits"], is_active=True)
                for pack_key, config in DEFAULT_CREDIT_PACKS.items()
            ]),
        }
        return seeded

    async def _seed_if_empty(self, model, rows: List) -> int:
        session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        async with session_factory() as session:
            async with session.begin():
                count = (await session.execute(select(func.count(model.id)))).scalar() or 0
                if count > 0:
                    return 0
                session.add_all(rows)
        return len(rows)

    async def drop_tables(self) -> None:
        """Drop all credit tables (uninstall)."""
        tables = [
            Base.metadata.tables[name]
            for name in (DeadLetterQueue.__tablename__, *LEDGER_TABLES)
        ]
        async with self.engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: Base.metadata.drop_all(sync_conn, tables=tables))
        self._known_status = None
