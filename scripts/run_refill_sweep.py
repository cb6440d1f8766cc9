"""
Daily Refill Sweep.

Cron entrypoint: refills every allocation whose billing cycle has elapsed.
Accounts that fail are dead-lettered; the exit code is 1 if any failed.

    python -m scripts.run_refill_sweep
"""

import asyncio
import sys

from credit_ledger.app.core.dependencies import build_credit_services
from credit_ledger.app.core.observability import configure_logging
from credit_ledger.app.db.provisioning import ProvisioningStatus
from credit_ledger.app.db.session import engine, AsyncSessionLocal


async def run_sweep() -> int:
    configure_logging()
    services = build_credit_services(engine, session_factory=AsyncSessionLocal)

    try:
        status = await services.provisioner.status()
        if status is not ProvisioningStatus.PROVISIONED:
            print(f"⚠️  Ledger not provisioned ({status.value}); nothing to sweep")
            return 0

        report = await services.scheduler.sweep_all()
        print(
            f"✅ Refilled {len(report.refilled)}, skipped {len(report.skipped)}, "
            f"failed {len(report.failed)}"
        )
        if report.failed:
            print(f"❌ Failed accounts (see dead_letter_queue): {report.failed}")
            return 1
        return 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_sweep()))
