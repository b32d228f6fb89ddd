"""Async SQLAlchemy engine + session factory.

Supports both SQLite (dev) and PostgreSQL (prod) with appropriate pool settings.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from config.settings import settings

# Convert postgresql:// to postgresql+asyncpg:// for async support
_db_url = settings.DATABASE_URL
if _db_url.startswith("postgresql://"):
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

_is_sqlite = _db_url.startswith("sqlite")

_engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if not _is_sqlite:
    # Reconciliation runs RECONCILE_CONCURRENCY sessions next to request traffic
    _engine_kwargs.update({
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    })

engine = create_async_engine(_db_url, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """Dependency for FastAPI - yields an async session."""
    async with async_session() as session:
        yield session
