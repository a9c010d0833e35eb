# socialbank/transport/whatsapp_webhook.py
"""
Meta WhatsApp Cloud API webhook handler.

Handles:
- GET /webhooks/whatsapp: verification handshake (hub.verify_token + hub.challenge)
- POST /webhooks/whatsapp: inbound messages and status callbacks

The POST always answers 200 {"status": "ok"} once the signature checks
out, malformed payloads included, so Meta does not retry them. The reply
itself is delivered out-of-band by the engine.
"""
from __future__ import annotations

import hashlib
import hmac

from fastapi import BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from socialbank.config import settings
from socialbank.core.engine.errors import MalformedInput
from socialbank.core.engine.use_cases import ConversationEngine
from socialbank.infra.logging_config import get_logger, LogContext
from socialbank.infra.metrics import AppMetrics, inc_counter
from socialbank.transport.adapters import is_status_callback

logger = get_logger(__name__)

_OK = {"status": "ok"}


# -------------------------------------------------------------------------
# GET: Webhook Verification
# -------------------------------------------------------------------------

async def whatsapp_webhook_verify(request: Request) -> PlainTextResponse:
    """
    Meta sends hub.mode=subscribe, hub.verify_token and hub.challenge;
    echo the challenge as plain text on success, 403 otherwise.
    """
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge")
    expected_token = settings.meta_webhook_verify_token

    if mode == "subscribe" and expected_token and token == expected_token:
        logger.info("WhatsApp webhook verification successful")
        inc_counter("whatsapp_webhook_verified")
        return PlainTextResponse(content=challenge or "", status_code=200)

    logger.warning(
        f"WhatsApp webhook verification failed: mode={mode}, token_match={token == expected_token}"
    )
    AppMetrics.webhook_validation_failed("whatsapp")
    raise HTTPException(status_code=403, detail="Verification failed")


# -------------------------------------------------------------------------
# Signature Verification
# -------------------------------------------------------------------------

def verify_signature(signature_header: str, body: bytes, app_secret: str | None) -> bool:
    """
    Verify an X-Hub-Signature-256 header ("sha256=<hex digest>") against the body.
    True when no app secret is configured.
    """
    if not app_secret:
        return True

    if not signature_header:
        logger.warning("WhatsApp webhook: missing X-Hub-Signature-256 header")
        return False

    if not signature_header.startswith("sha256="):
        logger.warning("WhatsApp webhook: invalid signature format")
        return False

    computed_sig = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[7:], computed_sig)


# -------------------------------------------------------------------------
# POST: Inbound Events
# -------------------------------------------------------------------------

async def _process(engine: ConversationEngine, payload: dict, request_id: str) -> None:
    """Run one webhook payload through the engine. Never raises."""
    try:
        message = engine.adapter.parse(payload)
    except MalformedInput as exc:
        logger.warning(f"WhatsApp webhook: malformed payload ignored: {exc}")
        inc_counter("whatsapp_webhook_malformed_payload")
        return

    log_ctx = LogContext(logger, channel=engine.channel, owner=message.sender, request_id=request_id)

    try:
        result = await engine.handle(message)
    except Exception as exc:
        log_ctx.error(f"WhatsApp message processing failed: {exc.__class__.__name__}", exc_info=True)
        return

    log_ctx.bind(session_id=result.session_id).info(
        f"WhatsApp message processed: state={result.state}, duplicate={result.duplicate}"
    )


async def whatsapp_webhook_handler(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    body = await request.body()

    if settings.require_webhook_validation and not verify_signature(
        request.headers.get("X-Hub-Signature-256", ""), body, settings.meta_app_secret
    ):
        logger.error("WhatsApp webhook: signature verification failed")
        AppMetrics.webhook_validation_failed("whatsapp")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = await request.json()
    except Exception:
        logger.warning("WhatsApp webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("whatsapp_webhook_malformed_payload")
        return JSONResponse(_OK, status_code=200)

    if not isinstance(payload, dict) or payload.get("object") not in (None, "whatsapp_business_account"):
        logger.debug("WhatsApp webhook: ignoring non-whatsapp object")
        return JSONResponse(_OK, status_code=200)

    if is_status_callback(payload):
        inc_counter("whatsapp_status_callbacks")
        return JSONResponse(_OK, status_code=200)

    engine: ConversationEngine = request.app.state.engines["whatsapp"]
    request_id = getattr(request.state, "request_id", "unknown")

    # Acknowledge within Meta's timeout; the reply goes out via the Graph API
    background_tasks.add_task(_process, engine, payload, request_id)
    return JSONResponse(_OK, status_code=200)
