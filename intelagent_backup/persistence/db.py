from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from intelagent_backup.core.config import get_settings
from intelagent_backup.domain.models import Base

def build_engine(database_url: str) -> AsyncEngine:
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Keep a small bounded pool; backups run one at a time.
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 2
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(database_url, **engine_kwargs)

@lru_cache
def get_engine() -> AsyncEngine:
    return build_engine(get_settings().database_url)

@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    # Create missing tables for local/dev databases and tests.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
