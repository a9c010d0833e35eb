# socialbank/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from socialbank.infra.db_async import db_conn
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    # Next to this file: socialbank/infra/sql
    return Path(__file__).resolve().parent / "sql"


def list_migrations() -> list[Path]:
    """SQL files in apply order (001_..., 002_...)."""
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending SQL migrations in filename order.

    Applied files are tracked in the schema_migrations table; the whole run
    is one transaction.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    files = list_migrations()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )

            applied_now.append(version)
            logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
