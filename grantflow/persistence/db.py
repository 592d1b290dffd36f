from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from grantflow.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    # SQLite (tests, local runs) keeps SQLAlchemy's default pool.
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=settings.db_pool_timeout_s,
        pool_recycle=settings.db_pool_recycle_s,
    )
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {"server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)}}
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_options(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on success and roll back on every other exit path."""
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


_POOL_COUNTERS = {"size": "size", "checked_out": "checkedout", "checked_in": "checkedin", "overflow": "overflow"}


def pool_stats() -> dict[str, int | None]:
    # Counters are only present on queue pools; SQLite pools report None.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for name, attr in _POOL_COUNTERS.items():
        counter = getattr(pool, attr, None)
        stats[name] = int(counter()) if callable(counter) else None
    return stats
