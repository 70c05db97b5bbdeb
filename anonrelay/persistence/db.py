from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from anonrelay.core.config import get_settings
from anonrelay.domain.models import Base


def build_engine(database_url: str) -> AsyncEngine:
    # Configure bounded asyncpg pools; sqlite (dev/tests) keeps driver defaults.
    settings = get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


@asynccontextmanager
async def transaction_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    # Commit when the block returns, roll back on any exception (cancellation included).
    factory = session_factory or SessionLocal
    async with factory() as session:
        async with session.begin():
            yield session


async def create_schema(target: AsyncEngine | None = None) -> None:
    # Create tables directly for dev databases and tests; production uses alembic revisions.
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
