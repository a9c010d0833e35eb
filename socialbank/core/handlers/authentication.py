# socialbank/core/handlers/authentication.py
"""
Login entry points.

OTP_VERIFICATION: a one-time code is generated, kept in session data and
sent out-of-band as a notice; the owner types it back.

AUTHENTICATION: the owner types their PIN; after ``max_pin_attempts``
wrong PINs the session is terminated.

Both report success with ``authenticated=True``; recording the login
and resuming the deferred request is the dispatcher's job.
"""
from __future__ import annotations

import hmac
from datetime import datetime, timedelta

from socialbank.core.engine.domain import BotResponse, CanonicalMessage, HandlerOutcome, Session, as_utc
from socialbank.core.engine.state_handlers import HandlerDeps, StateHandler
from socialbank.core.engine.states import State
from socialbank.core.handlers.common import PIN_ATTEMPTS, check_pin, reply
from socialbank.infra.logging_config import get_logger, mask_phone
from socialbank.infra.metrics import AppMetrics

logger = get_logger(__name__)

OTP = "otp"
OTP_GENERATED_AT = "otp_generated_at"

RESEND_KEYWORD = "resend"

OTP_PROMPT = "Please enter the 6-digit OTP sent to your WhatsApp number to continue."
OTP_EXPIRED = "OTP has expired. Please request a new one.\n\nReply with 'resend' to receive a new code."
PIN_PROMPT = "Welcome to Social Banking\nPlease enter your PIN to continue:"


def _otp_notice(otp: str, deps: HandlerDeps) -> str:
    minutes = max(1, deps.settings.otp_expiry_seconds // 60)
    return f"Your OTP for WhatsApp Banking is: {otp}\n\nThis code will expire in {minutes} minutes."


def _otp_prompt(deps: HandlerDeps) -> str:
    return OTP_PROMPT.replace("6-digit", f"{deps.settings.otp_length}-digit")


# ---------------------------------------------------------------------------
# OTP_VERIFICATION
# ---------------------------------------------------------------------------

async def _issue_otp(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    otp = deps.otp_generator(deps.settings.otp_length)
    logger.info(f"OTP issued: owner={mask_phone(session.owner)}")
    return HandlerOutcome(
        response=BotResponse(text=_otp_prompt(deps)),
        data_patch={OTP: otp, OTP_GENERATED_AT: deps.clock().isoformat()},
        notices=(_otp_notice(otp, deps),),
    )


async def _verify_otp(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    entered = message.normalized
    stored = session.get(OTP)
    generated_at = session.get(OTP_GENERATED_AT)

    if entered.casefold() == RESEND_KEYWORD or not stored or not generated_at:
        return await _issue_otp(session, deps)

    expires_at = as_utc(datetime.fromisoformat(generated_at)) + timedelta(seconds=deps.settings.otp_expiry_seconds)
    if expires_at <= deps.clock():
        return reply(OTP_EXPIRED)

    if not hmac.compare_digest(entered.encode(), str(stored).encode()):
        AppMetrics.login_failed(deps.profile.name, "otp")
        return reply(
            f"Invalid OTP. Please try again or type {deps.main_menu_token} to return to main menu."
        )

    return HandlerOutcome(
        response=BotResponse(text="OTP verified."),
        data_patch={OTP: None, OTP_GENERATED_AT: None},
        authenticated=True,
    )


# ---------------------------------------------------------------------------
# AUTHENTICATION (PIN)
# ---------------------------------------------------------------------------

async def _prompt_pin(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return reply(PIN_PROMPT)


async def _verify_login_pin(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    failure = await check_pin(message, session, deps)
    if failure is not None:
        if PIN_ATTEMPTS in failure.data_patch:
            AppMetrics.login_failed(deps.profile.name, "pin")
        return failure

    return HandlerOutcome(
        response=BotResponse(text="PIN verified."),
        data_patch={PIN_ATTEMPTS: None},
        authenticated=True,
    )


HANDLERS = (
    StateHandler(
        state=State.OTP_VERIFICATION,
        on_enter=_issue_otp,
        on_input=_verify_otp,
        owned_keys=(OTP, OTP_GENERATED_AT),
    ),
    StateHandler(
        state=State.AUTHENTICATION,
        on_enter=_prompt_pin,
        on_input=_verify_login_pin,
        owned_keys=(PIN_ATTEMPTS,),
    ),
)
