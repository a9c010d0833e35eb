# socialbank/transport/whatsapp_sender.py
"""
Meta WhatsApp Cloud API outbound sender.

Uses the Graph API to:
- Send text and interactive (button / list) messages
- Thread replies onto the inbound message (context.message_id)
- Mark inbound messages as read

Error classification (MetaSendError.retryable):
- Token expired/invalid  → NOT retryable (needs human intervention)
- Template required       → NOT retryable (outside 24h window)
- Invalid recipient       → NOT retryable (number not on WhatsApp)
- Rate limiting (429)     → retryable  (backoff then retry)
- Network / timeout       → retryable  (transient)
- Unknown server error    → retryable  (optimistic)

HTTP session lifecycle:
- Uses the shared sender session from socialbank.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import aiohttp

from socialbank.config import settings
from socialbank.infra.http_client import get_sender_session
from socialbank.infra.logging_config import get_logger, mask_phone
from socialbank.infra.metrics import inc_counter

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _graph_url(path: str) -> str:
    return f"https://graph.facebook.com/{settings.meta_graph_api_version}/{path}"


def _auth_headers() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.meta_access_token}",
        "Content-Type": "application/json",
    }


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class MetaSendError(Exception):
    """Error sending message via Meta Graph API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Meta-specific error code from the response body.
        retryable:  Whether a later retry could succeed.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Meta API error {status} (code={error_code}): {message}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_message(
    to: str,
    message: dict,
    *,
    phone_number_id: str | None = None,
    reply_to: str | None = None,
) -> dict:
    """
    Send a prepared message body.

    Args:
        to: Recipient phone number (international format without +)
        message: ``{"type": "text", "text": {...}}`` or
                 ``{"type": "interactive", "interactive": {...}}``
        phone_number_id: Business phone id to send from (defaults to settings)
        reply_to: Inbound message id to thread the reply onto

    Raises:
        MetaSendError: On API errors (check .retryable)
    """
    pid = phone_number_id or settings.meta_phone_number_id
    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        **message,
    }
    if reply_to:
        payload["context"] = {"message_id": reply_to}

    return await _send_request(_graph_url(f"{pid}/messages"), payload, to)


async def mark_as_read(message_id: str, *, phone_number_id: str | None = None) -> bool:
    """Best effort: a failure is logged and reported as False."""
    pid = phone_number_id or settings.meta_phone_number_id
    payload = {
        "messaging_product": "whatsapp",
        "status": "read",
        "message_id": message_id,
    }
    try:
        session = get_sender_session()
        async with session.post(
            _graph_url(f"{pid}/messages"),
            json=payload,
            headers=_auth_headers(),
            timeout=aiohttp.ClientTimeout(total=10),
        ) as resp:
            if resp.status not in (200, 201):
                logger.warning(f"Meta mark-as-read failed: status={resp.status}")
                return False
            return True
    except Exception as exc:
        logger.warning(f"Meta mark-as-read error: {type(exc).__name__}")
        return False


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json()
    except Exception:
        logger.warning(f"Meta API returned non-JSON body: status={resp.status}")
        return None


async def _send_request(url: str, payload: dict, to: str) -> dict:
    """
    Execute a Graph API send request.

    Classifies every error as retryable or not and raises MetaSendError.
    """
    try:
        session = get_sender_session()
        async with session.post(url, json=payload, headers=_auth_headers()) as resp:
            body = await _safe_response_json(resp)

            if resp.status in (200, 201) and body is not None:
                msg_id = body.get("messages", [{}])[0].get("id", "unknown")
                logger.info(f"Meta message sent: to={mask_phone(to)}, msg_id={msg_id[:20]}")
                inc_counter("meta_outbound_sent")
                return body

            error = (body or {}).get("error", {})
            error_code = error.get("code")
            error_msg = error.get("message", "Unknown error")
            error_subcode = error.get("error_subcode")

            # Auth failure: token expired / invalid
            if resp.status == 401 or error_code == 190:
                logger.error(f"Meta API auth error: status={resp.status}, code={error_code}")
                inc_counter("meta_outbound_auth_error")
                raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

            if resp.status == 429 or error_code in (4, 80007):
                logger.warning(f"Meta API rate limit: status={resp.status}, code={error_code}")
                inc_counter("meta_outbound_rate_limited")
                raise MetaSendError(resp.status, error_code, error_msg, retryable=True)

            # Outside the 24h customer-service window
            if error_subcode == 2388049:
                logger.warning(f"Meta API: template required: to={mask_phone(to)}")
                inc_counter("meta_outbound_template_required")
                raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

            if error_code == 131026:
                logger.warning(f"Meta API: recipient not on WhatsApp: to={mask_phone(to)}")
                inc_counter("meta_outbound_invalid_recipient")
                raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

            logger.error(
                f"Meta API error: status={resp.status}, code={error_code}, subcode={error_subcode}"
            )
            inc_counter("meta_outbound_error")
            raise MetaSendError(resp.status, error_code, error_msg, retryable=True)

    except MetaSendError:
        raise
    except (aiohttp.ClientError, TimeoutError) as exc:
        logger.error(f"Meta API connection error: {type(exc).__name__}", exc_info=True)
        inc_counter("meta_outbound_connection_error")
        raise MetaSendError(0, None, type(exc).__name__, retryable=True)
