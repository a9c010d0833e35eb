# socialbank/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for transient asyncpg errors.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable, TypeVar
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from socialbank.infra import db_async
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, asyncpg.PostgresConnectionError):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, asyncpg.DeadlockDetectedError):
        return True

    if isinstance(exc, (ConnectionError, OSError, asyncio.TimeoutError)):
        return True

    error_message = str(exc).lower()

    transient_patterns = [
        "connection reset",
        "server closed",
        "too many connections",
        "deadlock",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 2.0
):
    """
    Decorator to retry an idempotent async function on transient database errors.

    Only apply it to reads or to statements that are safe to repeat
    (a retried write must not double-apply).

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get(self, session_id: str): ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Database connection whose *acquisition* is retried on transient errors.

    Statements executed inside the block are not repeated: once the
    connection is handed out, errors propagate to the caller unchanged.

    Usage:
        async with safe_db_conn() as conn:
            await conn.execute(...)
    """
    max_retries = 3
    delay = 0.1
    conn = None

    for attempt in range(max_retries + 1):
        try:
            conn = await db_async.acquire()
            break
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise
            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 2.0)

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await db_async.release(conn)
