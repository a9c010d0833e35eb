# socialbank/core/engine/use_cases.py
import asyncio
import weakref
from typing import Any, Mapping, Optional

from socialbank.core import texts
from socialbank.core.engine.dispatcher import DialogueDispatcher
from socialbank.core.engine.domain import BotResponse, CanonicalMessage, TurnResult
from socialbank.core.engine.errors import DeliveryFailure, DuplicateMessage
from socialbank.core.engine.ports import AsyncDeduplicator, AsyncSessionStore, ChannelAdapter
from socialbank.infra.logging_config import LogContext, get_logger
from socialbank.infra.metrics import AppMetrics

logger = get_logger(__name__)


class ConversationEngine:
    """
    Application service / use-case layer for one channel.
    Workflow: parse -> idempotency -> acknowledge -> per-owner serialization -> dispatch
    -> outcome record -> out-of-band delivery (asynchronous channels).

    Deduplication is decided before anything touches the session or the
    outside world. The per-owner lock serializes turns inside this
    process; the session store's version check covers other replicas.
    """

    def __init__(
        self,
        *,
        adapter: ChannelAdapter,
        dispatcher: DialogueDispatcher,
        dedup: AsyncDeduplicator,
        sessions: AsyncSessionStore,
    ) -> None:
        self.adapter = adapter
        self.channel = adapter.channel
        self.profile = adapter.profile
        self.dispatcher = dispatcher
        self.dedup = dedup
        self.sessions = sessions
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, owner: str) -> asyncio.Lock:
        lock = self._locks.get(owner)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner] = lock
        return lock

    async def process(self, raw: Mapping[str, Any]) -> TurnResult:
        """Parse a raw channel payload and run it through the pipeline. Raises MalformedInput."""
        message = self.adapter.parse(raw)
        return await self.handle(message)

    async def handle(self, message: CanonicalMessage) -> TurnResult:
        log = LogContext(logger, channel=self.channel, owner=message.sender)

        try:
            await self._admit(message)
        except DuplicateMessage as dup:
            AppMetrics.duplicate_message(self.channel)
            log.info(f"Duplicate message ignored: {dup.message_id}")
            return self._duplicate_result(dup)

        try:
            await self.adapter.acknowledge(message)
        except Exception:
            log.warning("Failed to acknowledge message", exc_info=True)

        async with self._lock_for(message.sender):
            with AppMetrics.track_turn_time(self.channel):
                try:
                    result = await self.dispatcher.dispatch(message)
                except Exception:
                    log.error("Unhandled error while dispatching message", exc_info=True)
                    result = TurnResult(
                        response=BotResponse(text=texts.generic_retry(self.dispatcher.deps.main_menu_token)),
                        state=None,
                        session_id=None,
                    )

            await self._record(message, result, log)

        if not self.profile.synchronous:
            await self._deliver_result(message, result, log)

        return result

    async def _admit(self, message: CanonicalMessage) -> None:
        """Claim the message id or raise DuplicateMessage with any stored outcome."""
        if await self.dedup.is_processed(self.channel, message.message_id):
            outcome = await self.dedup.get_outcome(self.channel, message.message_id)
            raise DuplicateMessage(self.channel, message.message_id, outcome)

        if not await self.dedup.mark_processed(self.channel, message.message_id):
            # Lost the race to a concurrent delivery of the same message
            outcome = await self.dedup.get_outcome(self.channel, message.message_id)
            raise DuplicateMessage(self.channel, message.message_id, outcome)

    def _duplicate_result(self, dup: DuplicateMessage) -> TurnResult:
        outcome = dup.outcome or {}
        stored = outcome.get("response")
        if stored:
            response = BotResponse.from_dict(stored)
        else:
            # First delivery is still in flight
            response = BotResponse(text=texts.generic_retry(self.dispatcher.deps.main_menu_token))
        return TurnResult(
            response=response,
            state=outcome.get("state"),
            session_id=outcome.get("session_id"),
            duplicate=True,
        )

    async def _record(self, message: CanonicalMessage, result: TurnResult, log: LogContext) -> None:
        outcome = {
            "response": result.response.to_dict(),
            "state": result.state,
            "session_id": result.session_id,
        }
        try:
            await self.dedup.record_outcome(self.channel, message.message_id, outcome)
        except Exception:
            log.warning("Failed to record message outcome", exc_info=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _deliver_result(self, message: CanonicalMessage, result: TurnResult, log: LogContext) -> None:
        options = {
            "business_phone_id": message.business_phone_id,
            "reply_to": message.message_id,
        }
        for notice in result.notices:
            await self._send(message.sender, BotResponse(text=notice), options, log)
        if result.response.text:
            await self._send(message.sender, result.response, options, log)

    async def _send(
        self,
        recipient: str,
        response: BotResponse,
        options: Optional[Mapping[str, Any]],
        log: LogContext,
    ) -> bool:
        try:
            delivered = await self.adapter.deliver(recipient, response, options)
        except DeliveryFailure as exc:
            log.error(str(exc))
            delivered = False

        if not delivered:
            AppMetrics.delivery_failed(self.channel)
            log.warning("Outbound delivery failed")
        return delivered

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def end_conversation(self, message: CanonicalMessage) -> Optional[str]:
        """End the session a message belongs to (gateway-initiated hang-up)."""
        async with self._lock_for(message.sender):
            session = await self.adapter.current_session(message)
            if session is None:
                return None
            await self.adapter.end_session(session.id)
            AppMetrics.session_ended(self.channel, "gateway")
            return session.id

    async def cleanup_expired(self, limit: int = 500) -> int:
        """End sessions idle past the channel timeout and notify owners where the channel allows it."""
        expired = await self.sessions.expire_idle(
            self.channel, self.profile.session_timeout_seconds, limit=limit
        )
        for session in expired:
            AppMetrics.session_expired(self.channel)
            if not self.profile.synchronous:
                log = LogContext(logger, channel=self.channel, owner=session.owner, session_id=session.id)
                await self._send(session.owner, BotResponse(text=texts.SESSION_EXPIRED), None, log)

        if expired:
            logger.info(f"Expired {len(expired)} idle {self.channel} session(s)")
        return len(expired)
