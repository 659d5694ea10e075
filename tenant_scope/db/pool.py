"""Connection pool port and its asyncpg adapter.

The scoped primitives only need three things from a pool: borrow a
connection within a timeout, give it back to the idle set, or throw it away
so nobody borrows it again. Everything asyncpg-specific stays in
`AsyncpgConnectionPool`.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import asyncpg
import structlog

from tenant_scope.config import Settings, get_settings

logger = structlog.get_logger()


class ConnectionPool(Protocol):
    """Minimal pool protocol used by the scoped primitives."""

    async def acquire(self, timeout: float | None) -> Any:
        ...

    async def release(self, conn: Any) -> None:
        ...

    async def discard(self, conn: Any) -> None:
        ...


async def _init_connection(conn: asyncpg.Connection) -> None:
    # asyncpg returns JSON/JSONB as strings by default; audit metadata is a dict.
    await conn.set_type_codec(
        "json",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
        format="text",
    )


def _asyncpg_dsn(settings: Settings) -> str:
    # Accept SQLAlchemy-style URLs too.
    return str(settings.database_url).replace("postgresql+asyncpg://", "postgresql://")


class AsyncpgConnectionPool:
    """`ConnectionPool` backed by an `asyncpg.Pool`."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def create(cls, settings: Settings | None = None) -> "AsyncpgConnectionPool":
        settings = settings or get_settings()
        min_size = max(1, int(settings.db_pool_min_size))
        raw_pool = await asyncpg.create_pool(
            _asyncpg_dsn(settings),
            init=_init_connection,
            min_size=min_size,
            max_size=max(min_size, int(settings.db_pool_max_size)),
            command_timeout=settings.db_command_timeout_seconds,
            statement_cache_size=max(0, int(settings.db_statement_cache_size)),
        )
        return cls(raw_pool)

    async def acquire(self, timeout: float | None) -> asyncpg.Connection:
        return await self._pool.acquire(timeout=timeout)

    async def release(self, conn: asyncpg.Connection) -> None:
        await self._pool.release(conn)

    async def discard(self, conn: asyncpg.Connection) -> None:
        # terminate() is synchronous, so the socket is gone even if the
        # release below is interrupted. The pool replaces closed connections.
        conn.terminate()
        await self._pool.release(conn)

    async def close(self) -> None:
        await self._pool.close()

    def get_size(self) -> int:
        return self._pool.get_size()

    def get_idle_size(self) -> int:
        return self._pool.get_idle_size()


# Process-wide pool handle. It holds connections, never tenant state.
_pool: AsyncpgConnectionPool | None = None


async def init_pool(settings: Settings | None = None) -> AsyncpgConnectionPool:
    """Create the shared pool if it does not exist yet."""
    global _pool
    if _pool is None:
        settings = settings or get_settings()
        _pool = await AsyncpgConnectionPool.create(settings)
        logger.info(
            "Database connection pool initialized",
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
    return _pool


def get_pool() -> AsyncpgConnectionPool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")
