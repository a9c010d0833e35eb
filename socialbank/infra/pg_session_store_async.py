# socialbank/infra/pg_session_store_async.py
"""
Async PostgreSQL dialogue session store (asyncpg).

Concurrency:
    - create() runs in one transaction holding an advisory lock keyed by
      (channel, owner), so concurrent creates for one owner serialize and
      the partial unique index never sees two active rows.
    - update() is a single UPDATE: data is merged server-side and the
      version column acts as a compare-and-set token.
"""
from __future__ import annotations
import json
import uuid
from typing import Any, Mapping, Optional

import asyncpg

from socialbank.core.engine.domain import Session, SessionPatch, SessionStatus
from socialbank.core.engine.errors import SessionConflict
from socialbank.core.engine.ports import AsyncSessionStore
from socialbank.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from socialbank.infra.metrics import AppMetrics
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

_COLUMNS = "id, channel, owner, conversation_id, state, data::text AS data, status, version, created_at, updated_at"

# Extends the store TTL on every touch for sliding sessions
_SLIDE = "CASE WHEN sliding_ttl THEN now() + ttl_seconds * interval '1 second' ELSE expires_at END"


def _row_to_session(row: asyncpg.Record) -> Session:
    return Session(
        id=row["id"],
        channel=row["channel"],
        owner=row["owner"],
        state=row["state"],
        data=json.loads(row["data"]) if row["data"] else {},
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        conversation_id=row["conversation_id"],
        version=row["version"],
    )


def _split_patch(data: Mapping[str, Any]) -> tuple[dict, list[str]]:
    """Separate keys to set from keys to remove (patched to None)."""
    to_set = {k: v for k, v in data.items() if v is not None}
    to_remove = [k for k, v in data.items() if v is None]
    return to_set, to_remove


class AsyncPostgresSessionStore(AsyncSessionStore):
    """Async implementation of SessionStore using asyncpg"""

    async def create(
        self,
        *,
        channel: str,
        owner: str,
        initial_state: str,
        data: Mapping[str, Any],
        ttl_seconds: int,
        sliding: bool,
        conversation_id: str | None = None,
    ) -> str:
        session_id = uuid.uuid4().hex
        try:
            async with safe_db_conn(autocommit=False) as conn:
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", f"{channel}:{owner}")

                result = await conn.execute(
                    """
                    UPDATE dialogue_sessions
                       SET status = 'ended', ended_at = now()
                     WHERE channel = $1 AND owner = $2 AND status = 'active'
                    """,
                    channel, owner,
                )
                ended = int(result.split()[-1]) if result else 0

                await conn.execute(
                    """
                    INSERT INTO dialogue_sessions(
                        id, channel, owner, conversation_id, state, data,
                        ttl_seconds, sliding_ttl, expires_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, now() + $7::int * interval '1 second')
                    """,
                    session_id, channel, owner, conversation_id, initial_state,
                    json.dumps(dict(data)), ttl_seconds, sliding,
                )

            if ended:
                logger.info(f"Ended {ended} prior session(s): channel={channel}, owner={mask_phone(owner)}")
            return session_id
        except Exception:
            logger.error(f"Failed to create session: channel={channel}, owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("session_create")
            raise

    @retry_on_transient_error(max_retries=2)
    async def get(self, session_id: str) -> Optional[Session]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE dialogue_sessions
                       SET expires_at = {_SLIDE}
                     WHERE id = $1 AND status = 'active' AND expires_at > now()
                    RETURNING {_COLUMNS}
                    """,
                    session_id,
                )
                return _row_to_session(row) if row else None
        except Exception:
            logger.error(f"Failed to get session: id={session_id}", exc_info=True)
            AppMetrics.database_error("session_get")
            raise

    @retry_on_transient_error(max_retries=2)
    async def find_active(self, channel: str, owner: str) -> Optional[Session]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE dialogue_sessions
                       SET expires_at = {_SLIDE}
                     WHERE channel = $1 AND owner = $2 AND status = 'active' AND expires_at > now()
                    RETURNING {_COLUMNS}
                    """,
                    channel, owner,
                )
                return _row_to_session(row) if row else None
        except Exception:
            logger.error(f"Failed to find session: channel={channel}, owner={mask_phone(owner)}", exc_info=True)
            AppMetrics.database_error("session_find_active")
            raise

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        expected_version: int | None = None,
    ) -> bool:
        to_set, to_remove = _split_patch(patch.data)
        try:
            async with safe_db_conn() as conn:
                version = await conn.fetchval(
                    f"""
                    UPDATE dialogue_sessions
                       SET state = COALESCE($2, state),
                           data = (data || $3::jsonb) - $4::text[],
                           version = version + 1,
                           updated_at = now(),
                           expires_at = {_SLIDE}
                     WHERE id = $1
                       AND status = 'active'
                       AND expires_at > now()
                       AND ($5::int IS NULL OR version = $5::int)
                    RETURNING version
                    """,
                    session_id, patch.state, json.dumps(to_set), to_remove, expected_version,
                )
                if version is not None:
                    return True

                current = await conn.fetchval(
                    """
                    SELECT version FROM dialogue_sessions
                     WHERE id = $1 AND status = 'active' AND expires_at > now()
                    """,
                    session_id,
                )
        except Exception:
            logger.error(f"Failed to update session: id={session_id}", exc_info=True)
            AppMetrics.database_error("session_update")
            raise

        if current is None:
            return False
        raise SessionConflict(session_id, expected_version)

    async def end(self, session_id: str) -> bool:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    UPDATE dialogue_sessions
                       SET status = 'ended', ended_at = now(), updated_at = now()
                     WHERE id = $1 AND status = 'active'
                    """,
                    session_id,
                )
                return bool(result) and int(result.split()[-1]) > 0
        except Exception:
            logger.error(f"Failed to end session: id={session_id}", exc_info=True)
            AppMetrics.database_error("session_end")
            raise

    async def expire_idle(self, channel: str, idle_seconds: int, limit: int = 500) -> list[Session]:
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    f"""
                    UPDATE dialogue_sessions
                       SET status = 'ended', ended_at = now()
                     WHERE id IN (
                        SELECT id FROM dialogue_sessions
                         WHERE channel = $1
                           AND status = 'active'
                           AND updated_at < now() - $2::int * interval '1 second'
                         ORDER BY updated_at
                         LIMIT $3
                         FOR UPDATE SKIP LOCKED
                     )
                    RETURNING {_COLUMNS}
                    """,
                    channel, idle_seconds, limit,
                )
                if rows:
                    logger.info(f"Expired {len(rows)} idle sessions: channel={channel}, idle>{idle_seconds}s")
                return [_row_to_session(r) for r in rows]
        except Exception:
            logger.error(f"Failed to expire idle sessions: channel={channel}", exc_info=True)
            AppMetrics.database_error("session_expire_idle")
            raise
