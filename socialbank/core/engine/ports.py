# socialbank/core/engine/ports.py
from __future__ import annotations
from datetime import date
from typing import Any, Mapping, Optional, Protocol

from socialbank.config import ChannelProfile
from socialbank.core.engine.domain import (
    AccountProfile,
    AuthenticatedLogin,
    Balance,
    BankingResult,
    BillPaymentRequest,
    BotResponse,
    CanonicalMessage,
    ChatUser,
    Session,
    SessionPatch,
    StatementLine,
    TransferRequest,
)


# ============================================================================
# PERSISTENCE
# ============================================================================

class AsyncSessionStore(Protocol):
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
        """
        Create an active session and return its id.

        Any prior active session of ``owner`` on ``channel`` is ended first,
        atomically with respect to other creates for the same owner.
        """
        ...

    async def get(self, session_id: str) -> Optional[Session]:
        """None if absent, ended or past its TTL. Sliding sessions are refreshed."""
        ...

    async def find_active(self, channel: str, owner: str) -> Optional[Session]: ...

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        expected_version: int | None = None,
    ) -> bool:
        """
        Merge ``patch.data`` into the stored data and overwrite the state.

        False  => session no longer exists (ended or expired)
        Raises SessionConflict when ``expected_version`` does not match.
        """
        ...

    async def end(self, session_id: str) -> bool: ...

    async def expire_idle(self, channel: str, idle_seconds: int, limit: int = 500) -> list[Session]:
        """End active sessions idle for longer than ``idle_seconds`` and return them."""
        ...


class AsyncDeduplicator(Protocol):
    async def is_processed(self, channel: str, message_id: str) -> bool: ...

    async def mark_processed(self, channel: str, message_id: str) -> bool:
        """
        True  => this call recorded the message (caller proceeds)
        False => already recorded by someone else (duplicate)
        """
        ...

    async def record_outcome(self, channel: str, message_id: str, outcome: Mapping[str, Any]) -> None: ...

    async def get_outcome(self, channel: str, message_id: str) -> Optional[Mapping[str, Any]]: ...

    async def cleanup_old(self, ttl_days: int = 30) -> int: ...


class AsyncLoginRepository(Protocol):
    async def create(self, owner: str, session_id: str, validity_seconds: int) -> AuthenticatedLogin:
        """Deactivate prior logins of ``owner`` and record a new active one."""
        ...

    async def get_active(self, owner: str) -> Optional[AuthenticatedLogin]: ...

    async def deactivate(self, owner: str) -> int: ...


class AsyncUserDirectory(Protocol):
    async def get(self, owner: str) -> Optional[ChatUser]: ...

    async def register(self, owner: str, account_number: str, pin: str) -> ChatUser: ...

    async def verify_pin(self, owner: str, pin: str) -> bool: ...

    async def change_pin(self, owner: str, new_pin: str) -> bool: ...


# ============================================================================
# EXTERNAL COLLABORATORS
# ============================================================================

class CoreBankingClient(Protocol):
    async def get_account(self, account_number: str) -> Optional[AccountProfile]: ...

    async def get_balance(self, account_number: str) -> Balance: ...

    async def mini_statement(self, account_number: str, limit: int = 5) -> list[StatementLine]: ...

    async def full_statement(self, account_number: str, start: date, end: date) -> list[StatementLine]: ...

    async def transfer(self, request: TransferRequest) -> BankingResult: ...

    async def pay_bill(self, request: BillPaymentRequest) -> BankingResult: ...


class ChannelAdapter(Protocol):
    """
    Translates raw channel requests to canonical messages and back, and
    owns the channel's session identity scheme and TTL semantics.
    """
    channel: str
    profile: ChannelProfile

    def parse(self, raw: Mapping[str, Any]) -> CanonicalMessage:
        """Raises MalformedInput if required fields are absent."""
        ...

    def format(self, response: BotResponse) -> dict:
        """Never raises; falls back to a generic error payload."""
        ...

    async def current_session(self, message: CanonicalMessage) -> Optional[Session]:
        """Locate the live session this message belongs to."""
        ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def create_session(
        self,
        *,
        owner: str,
        state: str,
        data: Mapping[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> str: ...

    async def update_session(
        self,
        session_id: str,
        patch: SessionPatch,
        expected_version: int | None = None,
    ) -> bool: ...

    async def end_session(self, session_id: str) -> bool: ...

    async def acknowledge(self, message: CanonicalMessage) -> None:
        """Tell the provider an admitted message was received (e.g. read receipt). Never raises."""
        ...

    async def deliver(
        self,
        recipient: str,
        response: BotResponse,
        options: Mapping[str, Any] | None = None,
    ) -> bool: ...
