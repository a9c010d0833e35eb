# socialbank/infra/pg_user_repo_async.py
"""
Async PostgreSQL directory of registered chat users (asyncpg).

PIN hashing is CPU-bound and runs in a worker thread so it does not
stall the event loop.
"""
from __future__ import annotations
import asyncio
from typing import Optional

import asyncpg

from socialbank.core.engine.domain import ChatUser
from socialbank.core.engine.ports import AsyncUserDirectory
from socialbank.infra.crypto import DEFAULT_ITERATIONS, hash_pin, verify_pin
from socialbank.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from socialbank.infra.metrics import AppMetrics
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)


def _row_to_user(row: asyncpg.Record) -> ChatUser:
    return ChatUser(
        phone_number=row["phone_number"],
        account_number=row["account_number"],
        is_verified=row["is_verified"],
        created_at=row["created_at"],
    )


class AsyncPostgresUserDirectory(AsyncUserDirectory):

    def __init__(self, pin_hash_iterations: int = DEFAULT_ITERATIONS) -> None:
        self.pin_hash_iterations = pin_hash_iterations

    @retry_on_transient_error(max_retries=2)
    async def get(self, owner: str) -> Optional[ChatUser]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT phone_number, account_number, is_verified, created_at
                      FROM chat_users
                     WHERE phone_number=$1
                    """,
                    owner,
                )
                return _row_to_user(row) if row else None
        except Exception:
            logger.error(f"Failed to load user: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("user_get")
            raise

    async def register(self, owner: str, account_number: str, pin: str) -> ChatUser:
        pin_hash = await asyncio.to_thread(hash_pin, pin, self.pin_hash_iterations)
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO chat_users(phone_number, account_number, pin_hash)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (phone_number) DO UPDATE SET
                      account_number = EXCLUDED.account_number,
                      pin_hash = EXCLUDED.pin_hash,
                      updated_at = now()
                    RETURNING phone_number, account_number, is_verified, created_at
                    """,
                    owner, account_number, pin_hash,
                )
                logger.info(f"Chat user registered: owner={mask_phone(owner)}")
                return _row_to_user(row)
        except Exception:
            logger.error(f"Failed to register user: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("user_register")
            raise

    async def verify_pin(self, owner: str, pin: str) -> bool:
        try:
            async with safe_db_conn() as conn:
                pin_hash = await conn.fetchval(
                    "SELECT pin_hash FROM chat_users WHERE phone_number=$1",
                    owner,
                )
        except Exception:
            logger.error(f"Failed to load PIN hash: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("user_verify_pin")
            raise

        if not pin_hash:
            return False
        return await asyncio.to_thread(verify_pin, pin, pin_hash)

    async def change_pin(self, owner: str, new_pin: str) -> bool:
        pin_hash = await asyncio.to_thread(hash_pin, new_pin, self.pin_hash_iterations)
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    "UPDATE chat_users SET pin_hash=$2, updated_at=now() WHERE phone_number=$1",
                    owner, pin_hash,
                )
                return bool(result) and int(result.split()[-1]) > 0
        except Exception:
            logger.error(f"Failed to change PIN: owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("user_change_pin")
            raise
