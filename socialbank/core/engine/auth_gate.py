# socialbank/core/engine/auth_gate.py
"""
Authentication gate.

Decides whether an owner currently holds a valid login. Logins live
outside dialogue sessions so a conversation can span re-authentication.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from socialbank.config import ChannelProfile
from socialbank.core.engine.domain import AuthenticatedLogin, utcnow
from socialbank.core.engine.errors import AuthenticationRequired
from socialbank.core.engine.ports import AsyncLoginRepository, AsyncUserDirectory
from socialbank.core.engine.states import auth_entry_state, is_protected
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)


class AuthenticationGate:
    def __init__(
        self,
        *,
        logins: AsyncLoginRepository,
        users: AsyncUserDirectory,
        validity_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logins = logins
        self.users = users
        self.validity_seconds = validity_seconds
        self.clock = clock

    async def is_authenticated(self, owner: str) -> bool:
        login = await self.logins.get_active(owner)
        return login is not None and login.is_valid(self.clock())

    async def is_registered(self, owner: str) -> bool:
        return await self.users.get(owner) is not None

    async def require(self, owner: str, state: str) -> None:
        """Raise AuthenticationRequired if ``state`` is protected and the owner is not logged in."""
        if not is_protected(state):
            return
        if not await self.is_authenticated(owner):
            raise AuthenticationRequired(owner, state)

    async def login(self, owner: str, session_id: str) -> AuthenticatedLogin:
        login = await self.logins.create(owner, session_id, self.validity_seconds)
        logger.info(f"Login recorded: owner={mask_phone(owner)}, expires_at={login.expires_at.isoformat()}")
        return login

    async def logout(self, owner: str) -> int:
        deactivated = await self.logins.deactivate(owner)
        if deactivated:
            logger.info(f"Logout: owner={mask_phone(owner)}, deactivated={deactivated}")
        return deactivated

    @staticmethod
    def entry_state(profile: ChannelProfile) -> str:
        """OTP challenge on asynchronous channels, PIN challenge on USSD (per profile)."""
        return auth_entry_state(profile.auth_method)
