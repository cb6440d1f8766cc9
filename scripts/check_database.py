"""
Database connectivity and provisioning check.

    python -m scripts.check_database [--provision]
"""

import asyncio
import sys

import asyncpg

from credit_ledger.app.core.config import settings
from credit_ledger.app.db.provisioning import SchemaProvisioner
from credit_ledger.app.db.session import engine

# asyncpg wants a plain DSN without the SQLAlchemy driver suffix
db_url = settings.database_url.replace("+asyncpg", "")


async def check_db(provision: bool = False) -> int:
    print("Testing connection to configured database...")
    try:
        conn = await asyncpg.connect(db_url)
        await conn.close()
        print("✅ Connection Successful!")
    except Exception as e:
        print(f"❌ Connection Failed: {e}")
        return 1

    provisioner = SchemaProvisioner(engine)
    try:
        if provision:
            await provisioner.create_tables()
        status = await provisioner.status()
        print(f"Ledger schema: {status.value}")
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(check_db(provision="--provision" in sys.argv)))
