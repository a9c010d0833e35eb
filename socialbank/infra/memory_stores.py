# socialbank/infra/memory_stores.py
"""
In-process implementations of the persistence ports.

Used with ``storage_backend="memory"`` (local development, single process)
and by the test-suite. Semantics follow the Postgres repositories:
store TTLs (absolute or sliding), one active session per (channel, owner),
version compare-and-set on update, ``None`` in a data patch removes the key.
"""
from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from socialbank.core.engine.domain import (
    AuthenticatedLogin,
    ChatUser,
    ProcessedMessage,
    Session,
    SessionPatch,
    SessionStatus,
    utcnow,
)
from socialbank.core.engine.errors import SessionConflict
from socialbank.core.engine.ports import (
    AsyncDeduplicator,
    AsyncLoginRepository,
    AsyncSessionStore,
    AsyncUserDirectory,
)
from socialbank.infra.crypto import DEFAULT_ITERATIONS, hash_pin, verify_pin
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

Clock = Callable[[], datetime]


@dataclass
class _SessionRow:
    session: Session
    ttl_seconds: int
    sliding: bool
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.session.is_active and self.expires_at > now


class InMemorySessionStore(AsyncSessionStore):
    """Ended sessions are dropped, not kept as history; the idle sweep ends lapsed ones."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._rows: dict[str, _SessionRow] = {}
        self._lock = asyncio.Lock()

    def _touch(self, row: _SessionRow, now: datetime) -> None:
        if row.sliding:
            row.expires_at = now + timedelta(seconds=row.ttl_seconds)

    def _end_row(self, session_id: str) -> Session:
        row = self._rows.pop(session_id)
        return replace(row.session, status=SessionStatus.ENDED)

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
        async with self._lock:
            now = self._clock()
            prior = [
                sid for sid, row in self._rows.items()
                if row.session.channel == channel and row.session.owner == owner and row.session.is_active
            ]
            for sid in prior:
                self._end_row(sid)
                logger.info(f"Ended prior session: channel={channel}, owner={mask_phone(owner)}")

            session_id = uuid.uuid4().hex
            self._rows[session_id] = _SessionRow(
                session=Session(
                    id=session_id,
                    channel=channel,
                    owner=owner,
                    state=initial_state,
                    data=dict(data),
                    created_at=now,
                    updated_at=now,
                    conversation_id=conversation_id,
                ),
                ttl_seconds=ttl_seconds,
                sliding=sliding,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return session_id

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            now = self._clock()
            row = self._rows.get(session_id)
            if row is None or not row.is_live(now):
                return None
            self._touch(row, now)
            return row.session

    async def find_active(self, channel: str, owner: str) -> Optional[Session]:
        async with self._lock:
            now = self._clock()
            for row in self._rows.values():
                s = row.session
                if s.channel == channel and s.owner == owner and row.is_live(now):
                    self._touch(row, now)
                    return s
            return None

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        expected_version: int | None = None,
    ) -> bool:
        async with self._lock:
            now = self._clock()
            row = self._rows.get(session_id)
            if row is None or not row.is_live(now):
                return False
            current = row.session
            if expected_version is not None and current.version != expected_version:
                raise SessionConflict(session_id, expected_version)

            data = dict(current.data)
            for key, value in patch.data.items():
                if value is None:
                    data.pop(key, None)
                else:
                    data[key] = value

            row.session = replace(
                current,
                state=patch.state if patch.state is not None else current.state,
                data=data,
                version=current.version + 1,
                updated_at=now,
            )
            self._touch(row, now)
            return True

    async def end(self, session_id: str) -> bool:
        async with self._lock:
            row = self._rows.get(session_id)
            if row is None or not row.session.is_active:
                return False
            self._end_row(session_id)
            return True

    async def expire_idle(self, channel: str, idle_seconds: int, limit: int = 500) -> list[Session]:
        async with self._lock:
            cutoff = self._clock() - timedelta(seconds=idle_seconds)
            idle = sorted(
                (
                    row.session for row in self._rows.values()
                    if row.session.channel == channel
                    and row.session.is_active
                    and row.session.updated_at < cutoff
                ),
                key=lambda s: s.updated_at,
            )[:limit]
            return [self._end_row(session.id) for session in idle]


class InMemoryDeduplicator(AsyncDeduplicator):

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._rows: dict[tuple[str, str], ProcessedMessage] = {}
        self._lock = asyncio.Lock()

    async def is_processed(self, channel: str, message_id: str) -> bool:
        return (channel, message_id) in self._rows

    async def mark_processed(self, channel: str, message_id: str) -> bool:
        async with self._lock:
            key = (channel, message_id)
            if key in self._rows:
                logger.info(f"Duplicate message: channel={channel}, message_id={message_id}")
                return False
            self._rows[key] = ProcessedMessage(channel=channel, message_id=message_id, created_at=self._clock())
            return True

    async def record_outcome(self, channel: str, message_id: str, outcome: Mapping[str, Any]) -> None:
        async with self._lock:
            key = (channel, message_id)
            row = self._rows.get(key)
            if row is not None:
                self._rows[key] = replace(row, outcome=dict(outcome))

    async def get_outcome(self, channel: str, message_id: str) -> Optional[Mapping[str, Any]]:
        row = self._rows.get((channel, message_id))
        return row.outcome if row else None

    async def cleanup_old(self, ttl_days: int = 30) -> int:
        async with self._lock:
            cutoff = self._clock() - timedelta(days=ttl_days)
            stale = [key for key, row in self._rows.items() if row.created_at < cutoff]
            for key in stale:
                del self._rows[key]
            return len(stale)


class InMemoryLoginRepository(AsyncLoginRepository):
    """Only logins that are still valid are kept."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._logins: list[AuthenticatedLogin] = []
        self._lock = asyncio.Lock()

    def _deactivate(self, owner: str) -> int:
        now = self._clock()
        kept = [login for login in self._logins if login.owner != owner and login.is_valid(now)]
        count = sum(1 for login in self._logins if login.owner == owner and login.is_active)
        self._logins = kept
        return count

    async def create(self, owner: str, session_id: str, validity_seconds: int) -> AuthenticatedLogin:
        async with self._lock:
            self._deactivate(owner)
            now = self._clock()
            login = AuthenticatedLogin(
                owner=owner,
                session_id=session_id,
                authenticated_at=now,
                expires_at=now + timedelta(seconds=validity_seconds),
            )
            self._logins.append(login)
            return login

    async def get_active(self, owner: str) -> Optional[AuthenticatedLogin]:
        now = self._clock()
        for login in reversed(self._logins):
            if login.owner == owner and login.is_valid(now):
                return login
        return None

    async def deactivate(self, owner: str) -> int:
        async with self._lock:
            return self._deactivate(owner)


@dataclass
class _UserRow:
    user: ChatUser
    pin_hash: str = field(repr=False)


class InMemoryUserDirectory(AsyncUserDirectory):

    def __init__(self, pin_hash_iterations: int = DEFAULT_ITERATIONS, clock: Clock = utcnow) -> None:
        self.pin_hash_iterations = pin_hash_iterations
        self._clock = clock
        self._users: dict[str, _UserRow] = {}
        self._lock = asyncio.Lock()

    async def get(self, owner: str) -> Optional[ChatUser]:
        row = self._users.get(owner)
        return row.user if row else None

    async def register(self, owner: str, account_number: str, pin: str) -> ChatUser:
        pin_hash = await asyncio.to_thread(hash_pin, pin, self.pin_hash_iterations)
        async with self._lock:
            existing = self._users.get(owner)
            user = ChatUser(
                phone_number=owner,
                account_number=account_number,
                created_at=existing.user.created_at if existing else self._clock(),
            )
            self._users[owner] = _UserRow(user=user, pin_hash=pin_hash)
            logger.info(f"Chat user registered: owner={mask_phone(owner)}")
            return user

    async def verify_pin(self, owner: str, pin: str) -> bool:
        row = self._users.get(owner)
        if row is None:
            return False
        return await asyncio.to_thread(verify_pin, pin, row.pin_hash)

    async def change_pin(self, owner: str, new_pin: str) -> bool:
        pin_hash = await asyncio.to_thread(hash_pin, new_pin, self.pin_hash_iterations)
        async with self._lock:
            row = self._users.get(owner)
            if row is None:
                return False
            row.pin_hash = pin_hash
            return True
