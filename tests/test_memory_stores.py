# tests/test_memory_stores.py
"""Tests for the in-memory session store, deduplicator, login repository and user directory."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock
from socialbank.core.engine.domain import ProcessedMessage, SessionPatch
from socialbank.core.engine.errors import SessionConflict
from socialbank.infra.memory_stores import (
    InMemoryDeduplicator,
    InMemoryLoginRepository,
    InMemorySessionStore,
    InMemoryUserDirectory,
)

OWNER = "254712345678"


# ============================================================================
# Session store
# ============================================================================

class TestInMemorySessionStore:

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemorySessionStore(clock=self.clock)

    async def _create(self, owner: str = OWNER, *, ttl: int = 600, sliding: bool = False, **kwargs) -> str:
        return await self.store.create(
            channel="whatsapp",
            owner=owner,
            initial_state="WELCOME",
            data=kwargs.pop("data", {}),
            ttl_seconds=ttl,
            sliding=sliding,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_create_and_get(self):
        sid = await self._create(data={"k": "v"}, conversation_id="conv-1")
        session = await self.store.get(sid)

        assert session.state == "WELCOME"
        assert session.data == {"k": "v"}
        assert session.version == 1
        assert session.conversation_id == "conv-1"
        assert session.is_active

    @pytest.mark.asyncio
    async def test_only_one_active_session_per_owner(self):
        ids = [await self._create() for _ in range(3)]

        active = [sid for sid in ids if await self.store.get(sid) is not None]
        assert active == [ids[-1]]
        assert (await self.store.find_active("whatsapp", OWNER)).id == ids[-1]

    @pytest.mark.asyncio
    async def test_concurrent_creates_leave_one_active(self):
        ids = await asyncio.gather(*(self._create() for _ in range(5)))
        active = [sid for sid in ids if await self.store.get(sid) is not None]
        assert len(active) == 1

    @pytest.mark.asyncio
    async def test_sessions_of_other_owners_are_untouched(self):
        a = await self._create("254700000001")
        b = await self._create("254700000002")
        assert await self.store.get(a) is not None
        assert await self.store.get(b) is not None

    @pytest.mark.asyncio
    async def test_update_merges_data_and_bumps_version(self):
        sid = await self._create(data={"keep": 1, "drop": 2})
        self.clock.advance(5)

        ok = await self.store.update(sid, SessionPatch(state="HELP", data={"drop": None, "new": 3}))

        assert ok is True
        session = await self.store.get(sid)
        assert session.state == "HELP"
        assert session.data == {"keep": 1, "new": 3}
        assert session.version == 2
        assert session.updated_at == self.clock.now

    @pytest.mark.asyncio
    async def test_update_without_state_keeps_state(self):
        sid = await self._create()
        await self.store.update(sid, SessionPatch(data={"a": 1}))
        assert (await self.store.get(sid)).state == "WELCOME"

    @pytest.mark.asyncio
    async def test_stale_version_raises_conflict(self):
        sid = await self._create()
        await self.store.update(sid, SessionPatch(state="HELP"), expected_version=1)

        with pytest.raises(SessionConflict):
            await self.store.update(sid, SessionPatch(state="WELCOME"), expected_version=1)

        assert (await self.store.get(sid)).state == "HELP"

    @pytest.mark.asyncio
    async def test_update_of_missing_session_returns_false(self):
        assert await self.store.update("missing", SessionPatch(state="HELP")) is False

    @pytest.mark.asyncio
    async def test_absolute_ttl_expires(self):
        sid = await self._create(ttl=120)
        self.clock.advance(60)
        assert await self.store.get(sid) is not None
        self.clock.advance(61)
        assert await self.store.get(sid) is None

    @pytest.mark.asyncio
    async def test_sliding_ttl_is_refreshed_on_read(self):
        sid = await self._create(ttl=120, sliding=True)
        for _ in range(3):
            self.clock.advance(100)
            assert await self.store.get(sid) is not None

        self.clock.advance(121)
        assert await self.store.get(sid) is None

    @pytest.mark.asyncio
    async def test_end(self):
        sid = await self._create()
        assert await self.store.end(sid) is True
        assert await self.store.get(sid) is None
        assert await self.store.end(sid) is False

    @pytest.mark.asyncio
    async def test_expire_idle_ends_only_idle_sessions(self):
        idle = await self._create("254700000001")
        self.clock.advance(300)
        fresh = await self._create("254700000002")
        self.clock.advance(301)

        expired = await self.store.expire_idle("whatsapp", idle_seconds=500)

        assert [s.id for s in expired] == [idle]
        assert await self.store.get(idle) is None
        assert await self.store.get(fresh) is not None

    @pytest.mark.asyncio
    async def test_expire_idle_respects_limit(self):
        for i in range(3):
            await self._create(f"25470000000{i}")
        self.clock.advance(1000)

        expired = await self.store.expire_idle("whatsapp", idle_seconds=10, limit=2)
        assert len(expired) == 2

    @pytest.mark.asyncio
    async def test_ended_sessions_are_not_retained(self):
        for _ in range(5):
            await self._create()
        ended = await self._create("254700000009")
        await self.store.end(ended)
        idle = await self._create("254700000008")
        self.clock.advance(1000)
        await self.store.expire_idle("whatsapp", idle_seconds=10)

        assert idle not in self.store._rows
        assert ended not in self.store._rows
        assert len(self.store._rows) == 0


# ============================================================================
# Deduplicator
# ============================================================================

class TestInMemoryDeduplicator:

    def setup_method(self):
        self.clock = FakeClock()
        self.dedup = InMemoryDeduplicator(clock=self.clock)

    @pytest.mark.asyncio
    async def test_first_mark_wins(self):
        assert await self.dedup.is_processed("whatsapp", "m1") is False
        assert await self.dedup.mark_processed("whatsapp", "m1") is True
        assert await self.dedup.mark_processed("whatsapp", "m1") is False
        assert await self.dedup.is_processed("whatsapp", "m1") is True

    @pytest.mark.asyncio
    async def test_scoped_per_channel(self):
        await self.dedup.mark_processed("whatsapp", "m1")
        assert await self.dedup.mark_processed("ussd", "m1") is True

    @pytest.mark.asyncio
    async def test_concurrent_marks_admit_once(self):
        results = await asyncio.gather(*(self.dedup.mark_processed("ussd", "s:1") for _ in range(10)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_outcome_is_recorded(self):
        await self.dedup.mark_processed("whatsapp", "m1")
        assert await self.dedup.get_outcome("whatsapp", "m1") is None

        await self.dedup.record_outcome("whatsapp", "m1", {"state": "WELCOME"})
        assert await self.dedup.get_outcome("whatsapp", "m1") == {"state": "WELCOME"}

    @pytest.mark.asyncio
    async def test_cleanup_old(self):
        await self.dedup.mark_processed("whatsapp", "old")
        self.clock.advance(31 * 86400)
        await self.dedup.mark_processed("whatsapp", "new")

        assert await self.dedup.cleanup_old(ttl_days=30) == 1
        assert await self.dedup.is_processed("whatsapp", "old") is False
        assert await self.dedup.is_processed("whatsapp", "new") is True

    @pytest.mark.asyncio
    async def test_rows_are_processed_messages(self):
        await self.dedup.mark_processed("ussd", "s:1")
        await self.dedup.record_outcome("ussd", "s:1", {"state": "HELP"})

        row = self.dedup._rows[("ussd", "s:1")]
        assert isinstance(row, ProcessedMessage)
        assert row.channel == "ussd"
        assert row.message_id == "s:1"
        assert row.created_at == self.clock.now
        assert row.outcome == {"state": "HELP"}


# ============================================================================
# Logins
# ============================================================================

class TestInMemoryLoginRepository:

    def setup_method(self):
        self.clock = FakeClock()
        self.logins = InMemoryLoginRepository(clock=self.clock)

    @pytest.mark.asyncio
    async def test_create_replaces_previous_login(self):
        first = await self.logins.create(OWNER, "s1", 1800)
        second = await self.logins.create(OWNER, "s2", 1800)

        active = await self.logins.get_active(OWNER)
        assert active == second
        assert active != first

    @pytest.mark.asyncio
    async def test_login_lapses(self):
        await self.logins.create(OWNER, "s1", 60)
        self.clock.advance(61)
        assert await self.logins.get_active(OWNER) is None

    @pytest.mark.asyncio
    async def test_deactivate(self):
        await self.logins.create(OWNER, "s1", 1800)
        assert await self.logins.deactivate(OWNER) == 1
        assert await self.logins.get_active(OWNER) is None
        assert await self.logins.deactivate(OWNER) == 0

    @pytest.mark.asyncio
    async def test_replaced_and_lapsed_logins_are_not_retained(self):
        for i in range(5):
            await self.logins.create(OWNER, f"s{i}", 1800)
        await self.logins.create("254700000001", "other", 60)
        self.clock.advance(61)
        await self.logins.create(OWNER, "latest", 1800)

        assert [login.session_id for login in self.logins._logins] == ["latest"]


# ============================================================================
# Users
# ============================================================================

class TestInMemoryUserDirectory:

    def setup_method(self):
        self.users = InMemoryUserDirectory(pin_hash_iterations=1000, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_register_and_verify(self):
        user = await self.users.register(OWNER, "1234567890", "1234")

        assert user.account_number == "1234567890"
        assert await self.users.get(OWNER) == user
        assert await self.users.verify_pin(OWNER, "1234") is True
        assert await self.users.verify_pin(OWNER, "4321") is False

    @pytest.mark.asyncio
    async def test_unknown_owner(self):
        assert await self.users.get(OWNER) is None
        assert await self.users.verify_pin(OWNER, "1234") is False
        assert await self.users.change_pin(OWNER, "1234") is False

    @pytest.mark.asyncio
    async def test_change_pin(self):
        await self.users.register(OWNER, "1234567890", "1234")
        assert await self.users.change_pin(OWNER, "9876") is True
        assert await self.users.verify_pin(OWNER, "9876") is True
        assert await self.users.verify_pin(OWNER, "1234") is False
