import asyncio
from typing import List

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.models import AdminActivityLog, Registration, RegistrationPayment
from app.db.session import Base, engine


# Dependency order: payments reference registrations
REQUIRED_TABLES: List[str] = [
    Registration.__tablename__,
    RegistrationPayment.__tablename__,
    AdminActivityLog.__tablename__,
]


async def ensure_tables(db_engine: AsyncEngine) -> List[str]:
    """
    Create any missing ledger tables. Existing tables are left untouched.
    Returns the names of the tables that were created.
    """
    async with db_engine.begin() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            await conn.run_sync(
                Base.metadata.create_all,
                tables=[Base.metadata.tables[name] for name in missing],
            )

    if missing:
        print(
            "Created missing tables: "
            + ", ".join(missing)
        )
    else:
        print("All required ledger tables already exist in the database.")
    return missing


async def main() -> None:
    await ensure_tables(engine)


if __name__ == "__main__":
    asyncio.run(main())
