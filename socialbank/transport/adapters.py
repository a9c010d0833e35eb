# socialbank/transport/adapters.py
"""
Channel adapters.

Each adapter converts a provider payload into a CanonicalMessage, turns a
BotResponse back into the provider's format and owns the channel's session
identity scheme. Session TTL semantics come from the channel profile, so
the dispatcher never branches on the channel.
"""
from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from socialbank.config import ChannelProfile, settings
from socialbank.core.engine.domain import (
    BotResponse,
    CanonicalMessage,
    MessageType,
    Session,
    SessionPatch,
)
from socialbank.core.engine.errors import DeliveryFailure, MalformedInput
from socialbank.core.engine.ports import AsyncSessionStore, ChannelAdapter
from socialbank.infra.logging_config import get_logger, mask_phone
from socialbank.transport import whatsapp_sender
from socialbank.transport.whatsapp_sender import MetaSendError

logger = get_logger(__name__)

# "2. Money Transfer" -> "2"
_NUMBERED_TITLE = re.compile(r"^\s*(\d+)\.\s")

WHATSAPP_FALLBACK_TEXT = "Sorry, we encountered an error. Please try again."
USSD_FALLBACK_TEXT = "System error. Please try again."

_BUTTON_TITLE_MAX = 20
_LIST_ROW_TITLE_MAX = 24
_INTERACTIVE_BODY_MAX = 1024
_TEXT_BODY_MAX = 4096
_MAX_REPLY_BUTTONS = 3


class _SessionBackedAdapter:
    """Session operations shared by both channels; TTLs come from the profile."""

    channel: str

    def __init__(self, profile: ChannelProfile, sessions: AsyncSessionStore) -> None:
        self.profile = profile
        self.sessions = sessions

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.sessions.get(session_id)

    async def create_session(
        self,
        *,
        owner: str,
        state: str,
        data: Mapping[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> str:
        return await self.sessions.create(
            channel=self.channel,
            owner=owner,
            initial_state=state,
            data=data or {},
            ttl_seconds=self.profile.store_ttl_seconds,
            sliding=self.profile.sliding_ttl,
            conversation_id=conversation_id,
        )

    async def update_session(
        self,
        session_id: str,
        patch: SessionPatch,
        expected_version: int | None = None,
    ) -> bool:
        return await self.sessions.update(session_id, patch, expected_version=expected_version)

    async def end_session(self, session_id: str) -> bool:
        return await self.sessions.end(session_id)


# ---------------------------------------------------------------------------
# WhatsApp (Meta Cloud API)
# ---------------------------------------------------------------------------

def first_message(payload: Mapping[str, Any]) -> tuple[dict, dict] | None:
    """
    Return (value, message) for the first message of a webhook payload.

    None for callbacks that carry no message (delivery/read statuses).
    """
    try:
        value = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return None
    messages = value.get("messages") or []
    if not messages:
        return None
    return value, messages[0]


def is_status_callback(payload: Mapping[str, Any]) -> bool:
    try:
        value = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return False
    return bool(value.get("statuses")) and not value.get("messages")


def _interactive_content(interactive: Mapping[str, Any]) -> str:
    reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
    if reply.get("id"):
        return str(reply["id"])
    title = str(reply.get("title", ""))
    match = _NUMBERED_TITLE.match(title)
    return match.group(1) if match else title


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class WhatsAppAdapter(_SessionBackedAdapter, ChannelAdapter):
    """
    Adapter for Meta WhatsApp Cloud API webhooks.

    Meta sends JSON payloads with structure:
    {
      "object": "whatsapp_business_account",
      "entry": [{
        "changes": [{
          "value": {
            "metadata": {"display_phone_number": "...", "phone_number_id": "..."},
            "contacts": [{"profile": {"name": "..."}, "wa_id": "..."}],
            "messages": [{
              "from": "...", "id": "wamid.xxx", "timestamp": "...",
              "type": "text", "text": {"body": "Hello"}
            }]
          },
          "field": "messages"
        }]
      }]
    }
    """

    channel = "whatsapp"

    def parse(self, raw: Mapping[str, Any]) -> CanonicalMessage:
        found = first_message(raw)
        if found is None:
            raise MalformedInput("WhatsApp payload carries no message", missing=("messages",))
        value, msg = found

        missing = tuple(k for k in ("id", "from") if not msg.get(k))
        if missing:
            raise MalformedInput(f"WhatsApp message is missing {', '.join(missing)}", missing=missing)

        metadata = value.get("metadata") or {}
        contacts = value.get("contacts") or [{}]
        sender = str(msg["from"])
        msg_type = msg.get("type")

        if msg_type == "interactive":
            content = _interactive_content(msg.get("interactive") or {})
            message_type = MessageType.INTERACTIVE
        elif msg_type == "button":
            content = str((msg.get("button") or {}).get("text", ""))
            message_type = MessageType.INTERACTIVE
        else:
            content = str((msg.get("text") or {}).get("body", ""))
            message_type = MessageType.TEXT
            if msg_type != "text":
                logger.info(f"WhatsApp message of unsupported type={msg_type} treated as empty text")

        timestamp = datetime.now(timezone.utc)
        if msg.get("timestamp"):
            try:
                timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)
            except (TypeError, ValueError):
                pass

        logger.info(
            f"WhatsApp message: from={mask_phone(sender)}, id={str(msg['id'])[:20]}, type={msg_type}"
        )

        return CanonicalMessage(
            channel=self.channel,
            session_id=f"whatsapp:{sender}",
            message_id=str(msg["id"]),
            sender=sender,
            recipient=str(metadata.get("display_phone_number", "")),
            content=content.strip(),
            type=message_type,
            timestamp=timestamp,
            raw=raw,
            business_phone_id=metadata.get("phone_number_id"),
            contact_name=(contacts[0].get("profile") or {}).get("name"),
        )

    def format(self, response: BotResponse) -> dict:
        try:
            if not response.buttons:
                return {"type": "text", "text": {"preview_url": False, "body": _truncate(response.text, _TEXT_BODY_MAX)}}

            body = {"text": _truncate(response.text, _INTERACTIVE_BODY_MAX)}
            if len(response.buttons) <= _MAX_REPLY_BUTTONS:
                return {
                    "type": "interactive",
                    "interactive": {
                        "type": "button",
                        "body": body,
                        "action": {
                            "buttons": [
                                {"type": "reply", "reply": {"id": b.id, "title": b.title[:_BUTTON_TITLE_MAX]}}
                                for b in response.buttons
                            ]
                        },
                    },
                }

            return {
                "type": "interactive",
                "interactive": {
                    "type": "list",
                    "body": body,
                    "action": {
                        "button": "Select option",
                        "sections": [{
                            "title": "Options",
                            "rows": [
                                {"id": b.id, "title": b.title[:_LIST_ROW_TITLE_MAX]}
                                for b in response.buttons
                            ],
                        }],
                    },
                },
            }
        except Exception:
            logger.error("Failed to format WhatsApp response", exc_info=True)
            return {"type": "text", "text": {"preview_url": False, "body": WHATSAPP_FALLBACK_TEXT}}

    async def current_session(self, message: CanonicalMessage) -> Optional[Session]:
        return await self.sessions.find_active(self.channel, message.sender)

    async def acknowledge(self, message: CanonicalMessage) -> None:
        if not (settings.whatsapp_mark_read and settings.meta_access_token):
            return
        await whatsapp_sender.mark_as_read(message.message_id, phone_number_id=message.business_phone_id)

    async def deliver(
        self,
        recipient: str,
        response: BotResponse,
        options: Mapping[str, Any] | None = None,
    ) -> bool:
        options = options or {}
        phone_number_id = options.get("business_phone_id") or settings.meta_phone_number_id
        if not settings.meta_access_token or not phone_number_id:
            raise DeliveryFailure(self.channel, "Meta Cloud API is not configured")

        try:
            await whatsapp_sender.send_message(
                recipient,
                self.format(response),
                phone_number_id=phone_number_id,
                reply_to=options.get("reply_to"),
            )
        except MetaSendError as exc:
            logger.error(
                f"WhatsApp delivery failed: to={mask_phone(recipient)}, status={exc.status}, "
                f"code={exc.error_code}, retryable={exc.retryable}"
            )
            return False
        return True


# ---------------------------------------------------------------------------
# USSD
# ---------------------------------------------------------------------------

class USSDAdapter(_SessionBackedAdapter, ChannelAdapter):
    """
    Adapter for USSD gateway callbacks.

    The gateway posts ``sessionId``, ``phoneNumber``, ``serviceCode`` and the
    cumulative ``text`` (``"1*2*1234"``) on every step and expects the reply
    in the HTTP response. Only the last ``*`` segment is new input.
    """

    channel = "ussd"

    def parse(self, raw: Mapping[str, Any]) -> CanonicalMessage:
        missing = tuple(k for k in ("sessionId", "phoneNumber") if not raw.get(k))
        if missing:
            raise MalformedInput(f"USSD request is missing {', '.join(missing)}", missing=missing)

        gateway_session = str(raw["sessionId"])
        sender = str(raw["phoneNumber"]).strip().lstrip("+")
        text = str(raw.get("text") or "")
        service_code = str(raw.get("serviceCode") or settings.ussd_service_code)
        content = text.split("*")[-1] if text else ""

        logger.info(f"USSD request: from={mask_phone(sender)}, session={gateway_session}, depth={text.count('*') + 1 if text else 0}")

        return CanonicalMessage(
            channel=self.channel,
            session_id=gateway_session,
            message_id=f"{gateway_session}:{text}",
            sender=sender,
            recipient=service_code,
            content=content.strip(),
            raw=raw,
        )

    def format(self, response: BotResponse) -> dict:
        try:
            return {
                "message": response.text,
                "type": "END" if response.end_session else "CON",
            }
        except Exception:
            logger.error("Failed to format USSD response", exc_info=True)
            return {"message": USSD_FALLBACK_TEXT, "type": "END"}

    async def current_session(self, message: CanonicalMessage) -> Optional[Session]:
        session = await self.sessions.find_active(self.channel, message.sender)
        if session is None or session.conversation_id != message.session_id:
            # A new gateway session starts a new dialogue
            return None
        return session

    async def acknowledge(self, message: CanonicalMessage) -> None:
        """USSD has no delivery receipts."""

    async def deliver(
        self,
        recipient: str,
        response: BotResponse,
        options: Mapping[str, Any] | None = None,
    ) -> bool:
        logger.debug("USSD replies travel in the HTTP response; out-of-band delivery is unsupported")
        return False


def get_adapter(channel: str, profile: ChannelProfile, sessions: AsyncSessionStore) -> ChannelAdapter:
    adapters = {
        "whatsapp": WhatsAppAdapter,
        "ussd": USSDAdapter,
    }

    adapter_cls = adapters.get(channel)
    if not adapter_cls:
        raise ValueError(f"Unknown channel: {channel}")

    return adapter_cls(profile, sessions)
