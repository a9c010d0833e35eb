# socialbank/infra/schema_validator.py
"""
Schema version check run at startup with the postgres storage backend.

The service does not migrate the database itself; it refuses to start
when the latest applied migration differs from
``settings.expected_schema_version``.
"""
from __future__ import annotations
from socialbank.config import settings
from socialbank.infra.db_async import db_conn
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m socialbank.infra.migrate"


async def _migrations_table_exists(conn) -> bool:
    return await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: schema missing or at a different version
    """
    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current_version = latest['version']
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {_MIGRATE_HINT}"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
    }


async def get_schema_info() -> dict:
    """Current schema state, for the health endpoint."""
    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")

    versions = [row['version'] for row in rows]
    latest = versions[-1] if versions else None
    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
