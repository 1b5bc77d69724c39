# herodispatch/infra/db_async.py
"""
asyncpg connection pool.

One pool per process, opened in the application lifespan (or by the
migration runner) and closed on shutdown. ``db_conn(autocommit=False)``
runs the block in a transaction that commits on a clean exit and rolls
back on any exception.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from herodispatch.config import settings
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Open the pool; a second call is a no-op."""
    global _pool
    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_statement_timeout_ms / 1000,
        server_settings={
            "application_name": "herodispatch",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            # Row locks of an abandoned accept must not outlive the request
            "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
        },
    )
    logger.info(f"Database pool open: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("Database pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Connection from the pool.

    Usage:
        async with db_conn(autocommit=False) as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_jobs WHERE id = $1 FOR UPDATE", job_id)
    """
    if _pool is None:
        raise RuntimeError("Database pool is not open, call init_pool() first")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
