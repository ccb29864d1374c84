"""
Pytest configuration and shared fixtures for reconciliation tests
"""

import os
import sys
import uuid
from datetime import date
from decimal import Decimal
from pathlib import Path

# Configure before any application module reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUDIT_HMAC_KEY", "test-audit-hmac-key-0123456789abcdef")
os.environ.setdefault("ENVIRONMENT", "test")

# Add backend root to path
backend_root = Path(__file__).parent.parent
sys.path.insert(0, str(backend_root))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.connection import Base
from database.reconciliation_models import (
    EntryType,
    LedgerTransactionDB,
    TransactionReconciliationStatus,
)


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def organization_id():
    return str(uuid.uuid4())


@pytest.fixture
def add_transaction(db, organization_id):
    """Factory fixture: insert a ledger transaction and return it."""

    async def _add(
        txn_date: date,
        amount: str,
        txn_type: EntryType,
        description: str = "Ledger transaction",
        status: TransactionReconciliationStatus = TransactionReconciliationStatus.UNRECONCILED,
        org_id: str = None,
    ) -> LedgerTransactionDB:
        txn = LedgerTransactionDB(
            organization_id=org_id or organization_id,
            date=txn_date,
            description=description,
            amount=Decimal(amount),
            type=txn_type,
            reconciliation_status=status,
        )
        db.add(txn)
        await db.commit()
        return txn

    return _add


@pytest.fixture
def january_session_args(organization_id):
    """Session for January 2025: 1000.00 -> 1350.00."""
    return {
        "organization_id": organization_id,
        "account_name": "Operating Account",
        "statement_start_date": date(2025, 1, 1),
        "statement_end_date": date(2025, 1, 31),
        "beginning_balance": "1000.00",
        "ending_balance": "1350.00",
        "statement_balance": "1350.00",
        "created_by": "user-1",
    }
