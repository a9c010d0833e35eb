# socialbank/infra/db_async.py
"""
Async database connection pool using asyncpg.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from socialbank.config import settings
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_command_timeout,
        server_settings={
            'application_name': 'socialbank_dialogue',
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


def _require_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


async def acquire() -> asyncpg.Connection:
    """Acquire a raw connection; the caller must hand it back with release()."""
    return await _require_pool().acquire(timeout=settings.pg_connect_timeout)


async def release(conn: asyncpg.Connection) -> None:
    await _require_pool().release(conn)


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dialogue_sessions WHERE id = $1", session_id)

    Args:
        autocommit: If True (default), every statement commits on its own.
                    If False, the block runs in one transaction that commits
                    on exit and rolls back on exception.
    """
    conn = await acquire()

    try:
        if not autocommit:
            async with conn.transaction():
                yield conn
        else:
            yield conn
    finally:
        await release(conn)
