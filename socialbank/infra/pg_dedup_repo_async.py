# socialbank/infra/pg_dedup_repo_async.py
"""
Async PostgreSQL message deduplicator (asyncpg).
Tracks processed inbound message ids per channel.
"""
from __future__ import annotations
import json
from typing import Any, Mapping, Optional

from socialbank.core.engine.ports import AsyncDeduplicator
from socialbank.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from socialbank.infra.metrics import AppMetrics
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresDeduplicator(AsyncDeduplicator):
    """Async PostgreSQL implementation of the Deduplicator using asyncpg."""

    @retry_on_transient_error(max_retries=2)
    async def is_processed(self, channel: str, message_id: str) -> bool:
        try:
            async with safe_db_conn() as conn:
                found = await conn.fetchval(
                    "SELECT 1 FROM processed_messages WHERE channel=$1 AND message_id=$2",
                    channel, message_id,
                )
                return found is not None
        except Exception:
            logger.error(f"Failed to check processed message: channel={channel}, message_id={message_id}", exc_info=True)
            AppMetrics.database_error("dedup_is_processed")
            raise

    async def mark_processed(self, channel: str, message_id: str) -> bool:
        """
        Record a message id.

        Returns:
            True  => this call recorded it (caller proceeds)
            False => already recorded (duplicate)
        """
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO processed_messages(channel, message_id)
                    VALUES ($1, $2)
                    ON CONFLICT (channel, message_id) DO NOTHING
                    """,
                    channel, message_id,
                )

                # Parse result: "INSERT 0 1" → inserted, "INSERT 0 0" → conflict (already recorded)
                row_count = 0
                if result and result.startswith("INSERT"):
                    row_count = int(result.split()[-1])

                if row_count == 0:
                    logger.info(f"Duplicate message: channel={channel}, message_id={message_id}")

                return row_count == 1

        except Exception:
            logger.error(f"Failed to mark processed message: channel={channel}, message_id={message_id}", exc_info=True)
            AppMetrics.database_error("dedup_mark_processed")
            raise

    async def record_outcome(self, channel: str, message_id: str, outcome: Mapping[str, Any]) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    UPDATE processed_messages
                       SET outcome = $3::jsonb
                     WHERE channel=$1 AND message_id=$2
                    """,
                    channel, message_id, json.dumps(dict(outcome)),
                )
        except Exception:
            logger.error(f"Failed to record outcome: channel={channel}, message_id={message_id}", exc_info=True)
            AppMetrics.database_error("dedup_record_outcome")
            raise

    @retry_on_transient_error(max_retries=2)
    async def get_outcome(self, channel: str, message_id: str) -> Optional[Mapping[str, Any]]:
        try:
            async with safe_db_conn() as conn:
                raw = await conn.fetchval(
                    "SELECT outcome::text FROM processed_messages WHERE channel=$1 AND message_id=$2",
                    channel, message_id,
                )
                return json.loads(raw) if raw else None
        except Exception:
            logger.error(f"Failed to load outcome: channel={channel}, message_id={message_id}", exc_info=True)
            AppMetrics.database_error("dedup_get_outcome")
            raise

    async def cleanup_old(self, ttl_days: int = 30) -> int:
        """
        Delete processed-message records older than ``ttl_days``.

        Prevents unbounded growth of the deduplication table. Old records
        no longer serve a deduplication purpose.

        Returns:
            Number of deleted rows.
        """
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM processed_messages
                    WHERE created_at < now() - ($1 || ' days')::interval
                    """,
                    str(ttl_days),
                )

                # Parse result: "DELETE N"
                deleted = 0
                if result and result.startswith("DELETE"):
                    deleted = int(result.split()[-1])

                if deleted > 0:
                    logger.info(f"Cleaned up {deleted} processed messages older than {ttl_days} days")

                return deleted

        except Exception:
            logger.error(f"Failed to cleanup processed messages: ttl_days={ttl_days}", exc_info=True)
            AppMetrics.database_error("dedup_cleanup_old")
            raise
