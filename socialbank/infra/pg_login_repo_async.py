# socialbank/infra/pg_login_repo_async.py
"""
Async PostgreSQL repository for authenticated logins (asyncpg).
"""
from __future__ import annotations
from typing import Optional

import asyncpg

from socialbank.core.engine.domain import AuthenticatedLogin
from socialbank.core.engine.ports import AsyncLoginRepository
from socialbank.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from socialbank.infra.metrics import AppMetrics
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)


def _row_to_login(row: asyncpg.Record) -> AuthenticatedLogin:
    return AuthenticatedLogin(
        owner=row["owner"],
        session_id=row["session_id"],
        authenticated_at=row["authenticated_at"],
        expires_at=row["expires_at"],
        is_active=row["is_active"],
    )


class AsyncPostgresLoginRepository(AsyncLoginRepository):

    async def create(self, owner: str, session_id: str, validity_seconds: int) -> AuthenticatedLogin:
        try:
            async with safe_db_conn(autocommit=False) as conn:
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", f"login:{owner}")
                await conn.execute(
                    "UPDATE chat_user_logins SET is_active = false WHERE owner=$1 AND is_active",
                    owner,
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO chat_user_logins(owner, session_id, expires_at)
                    VALUES ($1, $2, now() + $3::int * interval '1 second')
                    RETURNING owner, session_id, authenticated_at, expires_at, is_active
                    """,
                    owner, session_id, validity_seconds,
                )
                return _row_to_login(row)
        except Exception:
            logger.error(f"Failed to create login: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("login_create")
            raise

    @retry_on_transient_error(max_retries=2)
    async def get_active(self, owner: str) -> Optional[AuthenticatedLogin]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT owner, session_id, authenticated_at, expires_at, is_active
                      FROM chat_user_logins
                     WHERE owner=$1 AND is_active AND expires_at > now()
                     ORDER BY authenticated_at DESC
                     LIMIT 1
                    """,
                    owner,
                )
                return _row_to_login(row) if row else None
        except Exception:
            logger.error(f"Failed to load login: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("login_get_active")
            raise

    async def deactivate(self, owner: str) -> int:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    "UPDATE chat_user_logins SET is_active = false WHERE owner=$1 AND is_active",
                    owner,
                )
                return int(result.split()[-1]) if result else 0
        except Exception:
            logger.error(f"Failed to deactivate logins: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("login_deactivate")
            raise
