# socialbank/transport/ussd_endpoint.py
"""
USSD gateway endpoints.

- POST /ussd/session: one dialogue step; the reply travels back in the response
- POST /ussd/session/end: gateway notification that the caller hung up
- GET  /ussd/session/{session_id}: current dialogue session for a gateway session
"""
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from socialbank.core.engine.domain import CanonicalMessage
from socialbank.core.engine.errors import MalformedInput
from socialbank.core.engine.use_cases import ConversationEngine
from socialbank.infra.logging_config import get_logger, LogContext
from socialbank.transport.schemas import SessionView, USSDEndRequest, USSDRequest

logger = get_logger(__name__)


async def _read_body(request: Request) -> dict[str, Any]:
    """Gateways post either form-encoded or JSON bodies."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            data = await request.json()
            return data if isinstance(data, dict) else {}
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    except Exception:
        logger.warning("USSD request body could not be parsed")
        return {}


def _engine(request: Request) -> ConversationEngine:
    return request.app.state.engines["ussd"]


def _bad_request(exc: Exception) -> JSONResponse:
    return JSONResponse({"error": "Malformed USSD request", "detail": str(exc)}, status_code=400)


async def ussd_session_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    body = await _read_body(request)

    try:
        ussd = USSDRequest.model_validate(body)
        result = await engine.process(ussd.to_raw())
    except (ValidationError, MalformedInput) as exc:
        logger.warning(f"Rejected USSD request: {exc.__class__.__name__}")
        return _bad_request(exc)

    LogContext(
        logger,
        channel=engine.channel,
        owner=ussd.phone_number,
        session_id=result.session_id,
        request_id=getattr(request.state, "request_id", None),
    ).info(f"USSD step handled: state={result.state}, duplicate={result.duplicate}")

    return JSONResponse(engine.adapter.format(result.response), status_code=200)


async def ussd_session_end_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    body = await _read_body(request)

    try:
        end = USSDEndRequest.model_validate(body)
    except ValidationError as exc:
        return _bad_request(exc)

    owner = end.phone_number
    if not owner:
        raise HTTPException(status_code=400, detail="phoneNumber is required")

    message = CanonicalMessage(
        channel=engine.channel,
        session_id=end.session_id,
        message_id=f"{end.session_id}:end",
        sender=owner.strip().lstrip("+"),
        recipient="",
        content="",
    )
    ended = await engine.end_conversation(message)
    return JSONResponse({"status": "ok", "ended": ended is not None}, status_code=200)


async def ussd_session_view(request: Request, session_id: str, phone_number: str) -> SessionView:
    engine = _engine(request)
    owner = phone_number.strip().lstrip("+")
    session = await engine.sessions.find_active(engine.channel, owner)
    if session is None or session.conversation_id != session_id:
        raise HTTPException(status_code=404, detail="Session not found")

    return SessionView(
        id=session.id,
        channel=session.channel,
        owner=session.owner,
        state=session.state,
        status=session.status.value,
        conversation_id=session.conversation_id,
        version=session.version,
        created_at=session.created_at.isoformat(),
        updated_at=session.updated_at.isoformat(),
    )
