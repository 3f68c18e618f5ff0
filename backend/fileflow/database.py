"""Async SQLAlchemy engine and session factory.

Services are handed a session factory (``async_session`` in production)
and open one session per operation, so a test can pass a factory bound to its own SQLite file.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from fileflow.config import settings


def build_engine(url: str) -> AsyncEngine:
    # SQLite drivers reject the pool sizing arguments
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


engine = build_engine(settings.DATABASE_URL)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(bind: AsyncEngine = engine):
    """Create any missing tables for the FileFlow models."""
    from fileflow.models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_connection() -> None:
    """Round-trip a trivial query; raises if the database is unreachable."""
    async with async_session() as session:
        await session.execute(text("SELECT 1"))

