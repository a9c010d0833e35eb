# socialbank/core/engine/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# INBOUND
# ============================================================================

class MessageType(str, Enum):
    TEXT = "text"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class CanonicalMessage:
    """
    Channel-agnostic representation of one inbound user message.

    ``content`` is already normalized: button/list replies are resolved to
    their stable id or numeric token. ``raw`` is kept for diagnostics only
    and is exposed read-only.
    """
    channel: str
    session_id: str
    message_id: str
    sender: str
    recipient: str
    content: str
    type: MessageType = MessageType.TEXT
    timestamp: datetime = field(default_factory=utcnow)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    # Channel extras used for outbound delivery and greetings
    business_phone_id: Optional[str] = None
    contact_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.raw, MappingProxyType):
            object.__setattr__(self, "raw", MappingProxyType(dict(self.raw)))

    @property
    def normalized(self) -> str:
        return self.content.strip()


# ============================================================================
# SESSION
# ============================================================================

class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


@dataclass(frozen=True)
class Session:
    """
    Snapshot of a dialogue session as read from the store.

    Changes are expressed as ``SessionPatch`` objects and applied by the
    store; a snapshot is never mutated in place.
    """
    id: str
    channel: str
    owner: str
    state: str
    data: Mapping[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    conversation_id: Optional[str] = None
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def idle_seconds(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return (now - as_utc(self.updated_at)).total_seconds()

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class SessionPatch:
    """
    Change to apply to a session.

    ``data`` is merged key by key into the stored data; keys that are not
    mentioned keep their value. Set a key to ``None`` to clear it.
    """
    state: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.state is None and not self.data


@dataclass(frozen=True)
class ProcessedMessage:
    channel: str
    message_id: str
    processing_status: str = "PROCESSED"
    outcome: Optional[Mapping[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)


# ============================================================================
# AUTHENTICATION / USERS
# ============================================================================

@dataclass(frozen=True)
class AuthenticatedLogin:
    owner: str
    session_id: str
    authenticated_at: datetime
    expires_at: datetime
    is_active: bool = True

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_active and as_utc(self.expires_at) > now


@dataclass(frozen=True)
class ChatUser:
    """A registered banking customer reachable over the chat channels."""
    phone_number: str
    account_number: str
    is_verified: bool = True
    created_at: datetime = field(default_factory=utcnow)


# ============================================================================
# OUTBOUND
# ============================================================================

@dataclass(frozen=True)
class Button:
    id: str
    title: str


@dataclass(frozen=True)
class BotResponse:
    """Channel-neutral reply; adapters turn it into a provider payload."""
    text: str
    buttons: tuple[Button, ...] = ()
    end_session: bool = False

    def with_prefix(self, prefix: str) -> "BotResponse":
        return BotResponse(
            text=f"{prefix}{self.text}",
            buttons=self.buttons,
            end_session=self.end_session,
        )

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "buttons": [{"id": b.id, "title": b.title} for b in self.buttons],
            "end_session": self.end_session,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BotResponse":
        return cls(
            text=payload.get("text", ""),
            buttons=tuple(Button(b["id"], b["title"]) for b in payload.get("buttons", [])),
            end_session=bool(payload.get("end_session", False)),
        )


@dataclass(frozen=True)
class HandlerOutcome:
    """
    Result of one state-handler call.

    next_state:     state to persist (None keeps the current state)
    data_patch:     keys to merge into session data
    end_session:    end the dialogue session after replying
    notices:        extra messages delivered out-of-band before the reply
                    (e.g. the OTP itself)
    authenticated:  the owner just proved their identity; the dispatcher
                    records the login and replays any deferred input
    commit:         irreversible action (money movement, PIN change) run
                    only after this outcome's patch has been persisted;
                    its own outcome is then persisted in turn
    """
    response: BotResponse
    next_state: Optional[str] = None
    data_patch: Mapping[str, Any] = field(default_factory=dict)
    end_session: bool = False
    notices: tuple[str, ...] = ()
    authenticated: bool = False
    commit: Optional[Callable[[], Awaitable["HandlerOutcome"]]] = field(default=None, compare=False)


@dataclass(frozen=True)
class TurnResult:
    """What one inbound message produced."""
    response: BotResponse
    state: Optional[str]
    session_id: Optional[str]
    notices: tuple[str, ...] = ()
    duplicate: bool = False


# ============================================================================
# CORE BANKING VALUES
# ============================================================================

class TransferKind(str, Enum):
    INTERNAL = "internal"
    BANK = "bank"
    MOBILE_MONEY = "mobile_money"


@dataclass(frozen=True)
class AccountProfile:
    account_number: str
    account_name: str
    status: str = "ACTIVE"
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Balance:
    available: Decimal
    actual: Decimal
    currency: str


@dataclass(frozen=True)
class StatementLine:
    date: str
    description: str
    amount: Decimal


@dataclass(frozen=True)
class TransferRequest:
    kind: TransferKind
    from_account: str
    to_account: str
    amount: Decimal
    description: str = "Transfer"


@dataclass(frozen=True)
class BillPaymentRequest:
    biller_code: str
    bill_account: str
    amount: Decimal
    from_account: str


@dataclass(frozen=True)
class BankingResult:
    ok: bool
    message: str
    reference: Optional[str] = None
