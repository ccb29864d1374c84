"""
Database Migration: Create Reconciliation Tables

Creates tables for reconciliation sessions, statement entries, matches,
alerts and the chained audit log, plus the reconciliation columns of the ledger
transactions table. Safe to re-run: existing tables are left untouched.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine
from database.connection import engine, Base
from database import reconciliation_models  # noqa: F401  registers tables


async def create_tables(bind: AsyncEngine = None):
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    async with (bind or engine).begin() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        await conn.run_sync(Base.metadata.create_all)

        for i, table in enumerate(Base.metadata.sorted_tables):
            state = "already exists" if table.name in existing else "created"
            print(f"  ✓ Table {i+1}/{len(Base.metadata.sorted_tables)} {table.name} ({state})")

    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
