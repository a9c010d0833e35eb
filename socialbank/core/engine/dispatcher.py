# socialbank/core/engine/dispatcher.py
"""
Dialogue dispatcher: one inbound message in, one response out.

Per message:
    exit token       -> end session, log out, goodbye (terminal)
    main menu token  -> fresh WELCOME session
    no session       -> fresh WELCOME session (first turn)
    idle too long    -> end session, expiry notice (terminal)
    protected state  -> authentication gate, login redirect if needed
    menu hub         -> menu registry resolve / invalid selection
    handler state    -> state handler on_input
then the handler's outcome is persisted as a compare-and-set update
against the version that was read. Every handled turn writes, even with
an empty patch, so updated_at tracks the owner's last activity.

Outcomes carrying a ``commit`` are two-phase: the checkpoint patch (e.g.
step=executing) is persisted first and the irreversible action runs only
if that write won. A lost race therefore never repeats a transfer. Once
the action has run its result is always reported, even when recording
it loses a race; the step then stays at executing and the next turn is
told the outcome could not be confirmed.

Every path ends in a BotResponse; handler exceptions become a generic
retry message and leave the session untouched.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Optional

from socialbank.core.engine.auth_gate import AuthenticationGate
from socialbank.core.engine.domain import (
    BotResponse,
    CanonicalMessage,
    HandlerOutcome,
    Session,
    SessionPatch,
    TurnResult,
    utcnow,
)
from socialbank.core.engine.errors import AuthenticationRequired, HandlerFailure, SessionConflict
from socialbank.core.engine.menus import MenuRegistry
from socialbank.core.engine.ports import ChannelAdapter
from socialbank.core.engine.state_handlers import HandlerDeps, HandlerRegistry
from socialbank.core.engine.states import State, is_protected
from socialbank.core import texts
from socialbank.infra.logging_config import LogContext, get_logger
from socialbank.infra.metrics import AppMetrics

logger = get_logger(__name__)

# Session data keys owned by the dispatcher
PENDING_INPUT = "pending_input"
PENDING_STATE = "pending_state"


class DialogueDispatcher:
    def __init__(
        self,
        *,
        adapter: ChannelAdapter,
        gate: AuthenticationGate,
        menus: MenuRegistry,
        handlers: HandlerRegistry,
        deps: HandlerDeps,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.adapter = adapter
        self.channel = adapter.channel
        self.profile = adapter.profile
        self.gate = gate
        self.menus = menus
        self.handlers = handlers
        self.deps = deps
        self.clock = clock

    async def dispatch(self, message: CanonicalMessage) -> TurnResult:
        log = LogContext(logger, channel=self.channel, owner=message.sender)
        content = message.normalized

        if content == self.deps.exit_token:
            return await self._exit(message, log)

        if content == self.deps.main_menu_token:
            return await self._main_menu(message, log)

        session = await self.adapter.current_session(message)
        if session is None:
            return await self._start(message, log)

        log.bind(session_id=session.id)
        idle = session.idle_seconds(self.clock())
        if idle > self.profile.session_timeout_seconds:
            return await self._expire(session, idle, log)

        AppMetrics.message_received(self.channel, session.state)

        try:
            outcome = await self._handle(message, session, log)
        except HandlerFailure as exc:
            log.error(f"Handler failure in state {exc.state}: {exc.cause!r}", exc_info=exc.cause)
            AppMetrics.handler_failure(self.channel, exc.state)
            return self._retry(session)

        return await self._persist(message, session, outcome, log)

    # ------------------------------------------------------------------
    # Reserved tokens / lifecycle
    # ------------------------------------------------------------------

    async def _exit(self, message: CanonicalMessage, log: LogContext) -> TurnResult:
        session = await self.adapter.current_session(message)
        session_id = None
        if session is not None:
            session_id = session.id
            await self.adapter.end_session(session.id)
            AppMetrics.session_ended(self.channel, "exit")

        await self.gate.logout(message.sender)
        log.info("Owner exited the dialogue")

        return TurnResult(
            response=BotResponse(text=texts.GOODBYE, end_session=True),
            state=State.END,
            session_id=session_id,
        )

    async def _main_menu(self, message: CanonicalMessage, log: LogContext) -> TurnResult:
        session = await self.adapter.current_session(message)
        if session is not None:
            await self.adapter.end_session(session.id)
            AppMetrics.session_ended(self.channel, "main_menu")
        return await self._start(message, log)

    async def _start(self, message: CanonicalMessage, log: LogContext) -> TurnResult:
        session_id = await self.adapter.create_session(
            owner=message.sender,
            state=State.WELCOME,
            conversation_id=message.session_id,
        )
        AppMetrics.session_created(self.channel)
        log.bind(session_id=session_id).info("Session started at WELCOME")

        registered = await self.gate.is_registered(message.sender)
        response = self.menus.render(
            State.WELCOME,
            guest=not registered,
            prefix=texts.greeting(message.contact_name),
        )
        return TurnResult(response=response, state=State.WELCOME, session_id=session_id)

    async def _expire(self, session: Session, idle: float, log: LogContext) -> TurnResult:
        await self.adapter.end_session(session.id)
        AppMetrics.session_expired(self.channel)
        log.info(f"Session expired after {idle:.0f}s idle (state={session.state})")
        return TurnResult(
            response=BotResponse(text=texts.SESSION_EXPIRED, end_session=True),
            state=None,
            session_id=session.id,
        )

    def _retry(self, session: Session) -> TurnResult:
        return TurnResult(
            response=BotResponse(text=texts.generic_retry(self.deps.main_menu_token)),
            state=session.state,
            session_id=session.id,
        )

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    async def _handle(self, message: CanonicalMessage, session: Session, log: LogContext) -> HandlerOutcome:
        state = session.state
        content = message.normalized
        registered = await self.gate.is_registered(message.sender)

        if is_protected(state):
            if not registered:
                return self._register_first()
            try:
                await self.gate.require(message.sender, state)
            except AuthenticationRequired:
                log.info(f"Login required to continue in {state}")
                return await self._redirect_to_login(session, pending_input=content, pending_state=state)

        if self.menus.has_menu(state):
            target = self.menus.resolve(state, content, guest=not registered)
            if target is None:
                return HandlerOutcome(response=self.menus.render_invalid(state, guest=not registered))
            return await self._enter(target, message, session, registered=registered, log=log)

        handler = self.handlers.get(state)
        if handler is None:
            log.warning(f"No handler or menu for state {state}; returning to {State.WELCOME}")
            return HandlerOutcome(
                response=self.menus.render(
                    State.WELCOME,
                    guest=not registered,
                    prefix=texts.generic_retry(self.deps.main_menu_token) + "\n\n",
                ),
                next_state=State.WELCOME,
            )

        outcome = await self._call(state, lambda: handler.on_input(message, session, self.deps))
        if outcome.authenticated:
            return await self._complete_login(message, session, outcome, log)
        return outcome

    async def _enter(
        self,
        target: str,
        message: CanonicalMessage,
        session: Session,
        *,
        registered: bool,
        log: LogContext,
    ) -> HandlerOutcome:
        """Move into ``target``: render its menu or call its handler's on_enter."""
        if is_protected(target):
            if not registered:
                return self._register_first()
            try:
                await self.gate.require(message.sender, target)
            except AuthenticationRequired:
                log.info(f"Login required to enter {target}")
                return await self._redirect_to_login(
                    session,
                    pending_input=message.normalized,
                    pending_state=session.state,
                )

        if self.menus.has_menu(target):
            return HandlerOutcome(
                response=self.menus.render(target, guest=not registered),
                next_state=target,
            )

        handler = self.handlers.get(target)
        if handler is None:
            raise HandlerFailure(target, LookupError(f"No handler registered for state {target}"))

        outcome = await self._call(target, lambda: handler.on_enter(session, self.deps))
        return replace(
            outcome,
            next_state=outcome.next_state or target,
            data_patch={**handler.reset_patch(), **outcome.data_patch},
        )

    async def _redirect_to_login(
        self,
        session: Session,
        *,
        pending_input: str,
        pending_state: str,
    ) -> HandlerOutcome:
        entry = self.gate.entry_state(self.profile)
        handler = self.handlers.get(entry)
        if handler is None:
            raise HandlerFailure(entry, LookupError(f"No handler registered for state {entry}"))

        outcome = await self._call(entry, lambda: handler.on_enter(session, self.deps))
        AppMetrics.auth_redirect(self.channel)
        return replace(
            outcome,
            next_state=outcome.next_state or entry,
            data_patch={
                **handler.reset_patch(),
                **outcome.data_patch,
                PENDING_INPUT: pending_input,
                PENDING_STATE: pending_state,
            },
        )

    async def _complete_login(
        self,
        message: CanonicalMessage,
        session: Session,
        outcome: HandlerOutcome,
        log: LogContext,
    ) -> HandlerOutcome:
        """
        Record the login and replay the deferred input.

        The input is resolved against the menu it was typed in (WELCOME
        unless the login lapsed inside another hub). Unresolvable input
        lands on the WELCOME menu.
        """
        await self.gate.login(message.sender, session.id)
        AppMetrics.login_succeeded(self.channel, self.profile.auth_method)
        log.info("Owner authenticated")

        patch = {**outcome.data_patch, PENDING_INPUT: None, PENDING_STATE: None}
        pending_input: Optional[str] = session.get(PENDING_INPUT)
        pending_state: str = session.get(PENDING_STATE) or State.WELCOME
        if not self.menus.has_menu(pending_state):
            pending_state = State.WELCOME

        target = None
        if pending_input:
            target = self.menus.resolve(pending_state, pending_input)

        if target is None:
            return HandlerOutcome(
                response=self.menus.render(State.WELCOME, prefix=texts.LOGIN_SUCCESS),
                next_state=State.WELCOME,
                data_patch=patch,
                notices=outcome.notices,
            )

        log.info(f"Replaying deferred input into {target}")
        replayed = await self._enter(target, message, session, registered=True, log=log)
        return replace(
            replayed,
            response=replayed.response.with_prefix(texts.LOGIN_SUCCESS),
            data_patch={**patch, **replayed.data_patch},
            notices=outcome.notices + replayed.notices,
        )

    def _register_first(self) -> HandlerOutcome:
        return HandlerOutcome(
            response=self.menus.render(State.WELCOME, guest=True, prefix=texts.REGISTER_FIRST),
            next_state=State.WELCOME,
        )

    @staticmethod
    async def _call(state: str, invoke: Callable[[], Awaitable[HandlerOutcome]]) -> HandlerOutcome:
        try:
            return await invoke()
        except Exception as exc:
            raise HandlerFailure(state, exc) from exc

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(
        self,
        message: CanonicalMessage,
        session: Session,
        outcome: HandlerOutcome,
        log: LogContext,
    ) -> TurnResult:
        version = session.version
        state = session.state
        notices = outcome.notices
        committed = False

        while True:
            # An empty patch still records activity: the store bumps updated_at
            patch = SessionPatch(state=outcome.next_state, data=dict(outcome.data_patch))
            try:
                updated = await self.adapter.update_session(session.id, patch, expected_version=version)
            except SessionConflict as exc:
                log.warning(str(exc))
                if not committed:
                    return self._retry(session)
                # The action already ran: report its result, the step stays at executing
                updated = False

            if not updated:
                if committed:
                    log.warning(f"Could not record the result of the action in state {state}")
                    break
                log.info("Session disappeared before update; re-entering at WELCOME")
                return await self._start(message, log)

            version += 1
            state = outcome.next_state or state
            if outcome.commit is None:
                break

            try:
                result = await self._call(state, outcome.commit)
            except HandlerFailure as exc:
                log.error(f"Committed action failed in state {exc.state}: {exc.cause!r}", exc_info=exc.cause)
                AppMetrics.handler_failure(self.channel, exc.state)
                return TurnResult(
                    response=BotResponse(text=texts.generic_retry(self.deps.main_menu_token)),
                    state=state,
                    session_id=session.id,
                )
            committed = True
            notices = notices + result.notices
            outcome = result

        next_state = state
        response = outcome.response
        if outcome.end_session or response.end_session:
            await self.adapter.end_session(session.id)
            AppMetrics.session_ended(self.channel, "completed")
            next_state = State.END
            if not response.end_session:
                response = replace(response, end_session=True)

        return TurnResult(
            response=response,
            state=next_state,
            session_id=session.id,
            notices=notices,
        )
