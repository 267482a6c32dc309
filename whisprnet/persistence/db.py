from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from whisprnet.core.config import Settings, get_settings
from whisprnet.domain.models import Base


def _engine_kwargs(settings: Settings, database_url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not database_url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
        if settings.db_statement_timeout_ms > 0:
            kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
            }
    return kwargs


class Database:
    """Engine and session factory owned by a process entry point.

    The API app, the arq worker and operator scripts each build one instance and
    pass it to the components they construct; nothing in the package reaches for a
    module-level engine.
    """

    def __init__(self, database_url: str | None = None, *, settings: Settings | None = None) -> None:
        resolved_settings = settings or get_settings()
        self.url = database_url or resolved_settings.database_url
        self.engine: AsyncEngine = create_async_engine(
            self.url, **_engine_kwargs(resolved_settings, self.url)
        )
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        # Used by tests and local bootstrap; deployed schemas come from Alembic.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        # Expose DB pool counters for ops visibility without querying Postgres internals.
        pool = self.engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        size_fn = getattr(pool, "size", None)
        overflow_fn = getattr(pool, "overflow", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }
