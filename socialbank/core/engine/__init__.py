# socialbank/core/engine/__init__.py
"""
Core engine -- channel-agnostic dialogue logic.

This package contains the domain values, abstract protocols (ports),
state vocabulary, menu registry, authentication gate, state-handler
registry, the dispatcher and the per-channel use-case orchestrator
(ConversationEngine).

Canonical imports:
    from socialbank.core.engine import ConversationEngine, DialogueDispatcher
    from socialbank.core.engine.domain import CanonicalMessage, Session
    from socialbank.core.engine.ports import AsyncSessionStore
"""
from socialbank.core.engine.domain import (  # noqa: F401
    BotResponse,
    Button,
    CanonicalMessage,
    HandlerOutcome,
    Session,
    SessionPatch,
    SessionStatus,
    TurnResult,
)
from socialbank.core.engine.ports import (  # noqa: F401
    AsyncSessionStore,
    AsyncDeduplicator,
    AsyncLoginRepository,
    AsyncUserDirectory,
    ChannelAdapter,
    CoreBankingClient,
)
from socialbank.core.engine.states import State  # noqa: F401
from socialbank.core.engine.menus import MenuRegistry, build_default_menus  # noqa: F401
from socialbank.core.engine.auth_gate import AuthenticationGate  # noqa: F401
from socialbank.core.engine.state_handlers import HandlerDeps, HandlerRegistry, StateHandler  # noqa: F401
from socialbank.core.engine.dispatcher import DialogueDispatcher  # noqa: F401
from socialbank.core.engine.use_cases import ConversationEngine  # noqa: F401
