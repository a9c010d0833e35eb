# socialbank/core/engine/state_handlers.py
"""
State handler contract and registry.

A state handler owns the dialogue inside one non-menu state. It is a
pair of coroutines plus the session data keys it is allowed to write:

    on_enter(session, deps)           -> HandlerOutcome   (first prompt)
    on_input(message, session, deps)  -> HandlerOutcome   (every later turn)

Handlers never touch the store; they describe the change in the
returned outcome and the dispatcher persists it. Owned keys are cleared
whenever the state is entered, so partial input from an abandoned flow
never leaks into a new one.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Optional

from socialbank.config import ChannelProfile
from socialbank.core.engine.domain import CanonicalMessage, HandlerOutcome, Session, utcnow
from socialbank.core.engine.menus import MenuRegistry
from socialbank.core.engine.ports import AsyncUserDirectory, CoreBankingClient
from socialbank.core.engine.states import ALL_STATES, State
from socialbank.infra.logging_config import get_logger

if TYPE_CHECKING:
    from socialbank.config import Settings

logger = get_logger(__name__)


def generate_otp(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


@dataclass(frozen=True)
class HandlerDeps:
    """Everything a handler may use besides the message and the session."""
    profile: ChannelProfile
    menus: MenuRegistry
    users: AsyncUserDirectory
    banking: CoreBankingClient
    settings: "Settings"
    clock: Callable[[], datetime] = utcnow
    otp_generator: Callable[[int], str] = generate_otp

    @property
    def main_menu_token(self) -> str:
        return self.settings.main_menu_token

    @property
    def exit_token(self) -> str:
        return self.settings.exit_token


EnterFn = Callable[[Session, HandlerDeps], Awaitable[HandlerOutcome]]
InputFn = Callable[[CanonicalMessage, Session, HandlerDeps], Awaitable[HandlerOutcome]]


@dataclass(frozen=True)
class StateHandler:
    state: str
    on_enter: EnterFn
    on_input: InputFn
    owned_keys: tuple[str, ...] = field(default_factory=tuple)

    def reset_patch(self) -> dict:
        """Data patch that clears every key this handler owns."""
        return {key: None for key in self.owned_keys}


class HandlerRegistry:
    """
    Maps state names to handlers.

    One registry is built at startup and shared by every channel's
    dispatcher.
    """

    def __init__(self, handlers: Iterable[StateHandler] = ()):
        self._handlers: dict[str, StateHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: StateHandler) -> None:
        if handler.state in self._handlers:
            logger.warning(f"Replacing handler for state {handler.state}")
        self._handlers[handler.state] = handler

    def get(self, state: str) -> Optional[StateHandler]:
        return self._handlers.get(state)

    def missing_states(self, menus: MenuRegistry, known_states: Iterable[str] = ALL_STATES) -> list[str]:
        """Known states that neither a menu nor a handler can serve."""
        served = set(self._handlers) | menus.states() | {State.END}
        return sorted(set(known_states) - served)
