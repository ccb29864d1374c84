"""
Async database engine and session factory.

PostgreSQL (asyncpg) in deployed environments, SQLite (aiosqlite) for local
runs and tests. The URL comes from settings; a missing URL fails at import
so the service never starts without storage.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import get_settings

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent.parent / '.env')

_settings = get_settings()
if not _settings.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")


def build_engine(url: str, require_ssl: bool = False) -> AsyncEngine:
    """Create the async engine; pool sizing and SSL only apply to PostgreSQL."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"ssl": "require"} if require_ssl else {},
    )


engine = build_engine(_settings.DATABASE_URL, require_ssl=_settings.DATABASE_SSL)

# expire_on_commit=False: services return ORM rows after committing
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """FastAPI dependency: one session per request."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind: AsyncEngine = None) -> bool:
    """Check connectivity and create any missing reconciliation tables."""
    from database import reconciliation_models  # noqa: F401  registers tables

    async with (bind or engine).begin() as conn:
        await conn.execute(text("SELECT 1"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database ready; tables: {sorted(Base.metadata.tables)}")
    return True
