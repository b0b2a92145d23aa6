from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from newsletter_api.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
if settings.database_url.startswith("sqlite"):
    # Writers queue behind the SQLite write lock instead of failing fast.
    _engine_kwargs["connect_args"] = {"timeout": float(settings.sqlite_busy_timeout_s)}
else:
    # Configure bounded asyncpg pools for predictable latency under load.
    _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
