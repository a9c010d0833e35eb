# tests/conftest.py
"""Pytest configuration and fixtures"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Settings are read at import time: keep the test process off Postgres and the ESB
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("BANKING_BACKEND", "sandbox")
os.environ.setdefault("PIN_HASH_ITERATIONS", "1000")
os.environ.setdefault("ENABLE_REQUEST_LOGGING", "false")

from socialbank.config import Settings  # noqa: E402
from socialbank.core.engine.domain import CanonicalMessage  # noqa: E402
from socialbank.infra.banking_client import SandboxBankingClient  # noqa: E402
from socialbank.infra.memory_stores import (  # noqa: E402
    InMemoryDeduplicator,
    InMemoryLoginRepository,
    InMemorySessionStore,
    InMemoryUserDirectory,
)
from socialbank.infra.metrics import get_metrics_collector  # noqa: E402

OWNER = "254712345678"
ACCOUNT = "1234567890"
PIN = "1234"
OTP_CODE = "482913"


class FakeClock:
    """Settable clock shared by the stores and the dispatcher."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = {
        "pin_hash_iterations": 1000,
        "whatsapp_auth_method": "otp",
        "ussd_auth_method": "pin",
        "require_webhook_validation": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def whatsapp_payload(
    text: str,
    *,
    sender: str = OWNER,
    message_id: str = "wamid.0001",
    name: str | None = "John",
) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550001111", "phone_number_id": "PNID_1"},
                    "contacts": [{"profile": {"name": name}, "wa_id": sender}],
                    "messages": [{
                        "from": sender,
                        "id": message_id,
                        "timestamp": "1705309200",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }


def ussd_payload(text: str = "", *, session_id: str = "ATUid_1", phone: str = "+" + OWNER) -> dict:
    return {
        "sessionId": session_id,
        "phoneNumber": phone,
        "serviceCode": "*123#",
        "text": text,
    }


class Harness:
    """Both channel engines wired over in-memory stores, a fake clock and sandbox banking."""

    def __init__(self, **setting_overrides):
        from socialbank.transport.http_app import build_engines

        self.clock = FakeClock()
        self.settings = make_settings(**setting_overrides)
        self.sessions = InMemorySessionStore(clock=self.clock)
        self.dedup = InMemoryDeduplicator(clock=self.clock)
        self.logins = InMemoryLoginRepository(clock=self.clock)
        self.users = InMemoryUserDirectory(pin_hash_iterations=1000, clock=self.clock)
        self.banking = SandboxBankingClient()
        self.engines = build_engines(
            sessions=self.sessions,
            dedup=self.dedup,
            logins=self.logins,
            users=self.users,
            banking=self.banking,
            config=self.settings,
            clock=self.clock,
            otp_generator=lambda length: OTP_CODE[:length],
        )
        # Outbound WhatsApp messages are captured instead of sent
        self.delivered = AsyncMock(return_value=True)
        self.engines["whatsapp"].adapter.deliver = self.delivered
        self._counter = 0

    @property
    def whatsapp(self):
        return self.engines["whatsapp"]

    @property
    def ussd(self):
        return self.engines["ussd"]

    def _next_id(self) -> str:
        self._counter += 1
        return f"wamid.{self._counter:04d}"

    async def wa(self, text: str, *, sender: str = OWNER, message_id: str | None = None):
        payload = whatsapp_payload(text, sender=sender, message_id=message_id or self._next_id())
        return await self.whatsapp.process(payload)

    async def dial(self, text: str = "", *, session_id: str = "ATUid_1", phone: str = "+" + OWNER):
        return await self.ussd.process(ussd_payload(text, session_id=session_id, phone=phone))

    async def register(self, owner: str = OWNER, account: str = ACCOUNT, pin: str = PIN):
        return await self.users.register(owner, account, pin)

    async def login(self, owner: str = OWNER):
        return await self.logins.create(owner, "setup", self.settings.login_validity_seconds)

    def sent_texts(self) -> list[str]:
        return [call.args[1].text for call in self.delivered.await_args_list]


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def sample_whatsapp_payload():
    """Sample Meta Cloud API webhook payload with one text message"""
    return whatsapp_payload("Hello")


@pytest.fixture
def sample_ussd_payload():
    """Sample USSD gateway callback (first dial, empty text)"""
    return ussd_payload("")


@pytest.fixture
def owner():
    return OWNER


def canonical(text: str, *, channel: str = "whatsapp", sender: str = OWNER, message_id: str = "m-1",
              session_id: str | None = None) -> CanonicalMessage:
    return CanonicalMessage(
        channel=channel,
        session_id=session_id or f"{channel}:{sender}",
        message_id=message_id,
        sender=sender,
        recipient="",
        content=text,
    )
