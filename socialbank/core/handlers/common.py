# socialbank/core/handlers/common.py
"""
Shared building blocks for the banking flows.

Input validators are plain functions so they can be tested on their
own. ``check_pin`` implements the PIN step every money-moving flow ends
with, including the attempt limit.
"""
from __future__ import annotations

import asyncio
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from socialbank.core import texts
from socialbank.core.engine.domain import BotResponse, Button, CanonicalMessage, ChatUser, HandlerOutcome, Session
from socialbank.core.engine.state_handlers import HandlerDeps
from socialbank.core.engine.states import State
from socialbank.infra.crypto import hash_pin, verify_pin
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

# Data keys shared by the multi-step flows
STEP = "step"
PIN_ATTEMPTS = "pin_attempts"

# Step value persisted before an irreversible action runs
EXECUTING = "executing"

CONFIRM = "confirm"
CANCEL = "cancel"

MAX_PIN_ATTEMPTS_EXCEEDED = "Maximum PIN attempts exceeded. Please try again later."
UNCONFIRMED_ACTION = (
    "We could not confirm the result of your last request. "
    "Please check your balance or statement before trying again."
)

_ACCOUNT_RE = re.compile(r"^\d{6,20}$")
_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")
_CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

def is_valid_pin(pin: str, length: int = 4) -> bool:
    return len(pin) == length and pin.isdigit()


def is_valid_account_number(value: str) -> bool:
    return bool(_ACCOUNT_RE.match(value))


def parse_amount(value: str) -> Optional[Decimal]:
    """Parse a positive amount such as ``1500`` or ``1,500.50``; None if invalid."""
    cleaned = value.replace(",", "").strip()
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def parse_date(value: str) -> Optional[date]:
    """Parse ``DD/MM/YYYY``; None for a bad format or a date that does not exist."""
    if not _DATE_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%d/%m/%Y").date()
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def normalize_msisdn(value: str, country_code: str = "254") -> Optional[str]:
    """
    Normalise a mobile number to international form without ``+``.

    ``0712345678`` and ``+254712345678`` both become ``254712345678``.
    """
    digits = re.sub(r"\D", "", value)
    if len(digits) == 10 and digits.startswith("0"):
        digits = country_code + digits[1:]
    if len(digits) == 12 and digits.startswith(country_code):
        return digits
    return None


def parse_confirmation(value: str) -> Optional[str]:
    lowered = value.strip().casefold()
    if lowered in ("1", CONFIRM):
        return CONFIRM
    if lowered in ("2", CANCEL):
        return CANCEL
    return None


def format_amount(amount: Decimal | float | str, currency: str = "KES") -> str:
    return f"{currency} {Decimal(str(amount)):,.2f}"


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def choice_response(prompt: str, options: Iterable[tuple[str, str]]) -> BotResponse:
    """Numbered list with matching buttons, for in-flow choices."""
    options = list(options)
    lines = [prompt, ""]
    lines.extend(f"{token}. {label}" for token, label in options)
    return BotResponse(
        text="\n".join(lines),
        buttons=tuple(Button(id=token, title=f"{token}. {label}") for token, label in options),
    )


def confirm_response(summary: str) -> BotResponse:
    return choice_response(f"{summary}\n\nSelect an option:", [("1", "Confirm"), ("2", "Cancel")])


def reply(
    text: str,
    *,
    next_state: Optional[str] = None,
    data: Optional[Mapping[str, Any]] = None,
) -> HandlerOutcome:
    return HandlerOutcome(
        response=BotResponse(text=text),
        next_state=next_state,
        data_patch=dict(data or {}),
    )


def finish(text: str, deps: HandlerDeps, *, owned_keys: Iterable[str] = ()) -> HandlerOutcome:
    """Complete a flow: show ``text`` and return the owner to WELCOME."""
    return HandlerOutcome(
        response=BotResponse(text=f"{text}\n\n{texts.back_to_menu(deps.main_menu_token)}"),
        next_state=State.WELCOME,
        data_patch={key: None for key in owned_keys},
    )


# ---------------------------------------------------------------------------
# Users / PINs
# ---------------------------------------------------------------------------

async def require_user(session: Session, deps: HandlerDeps) -> ChatUser:
    user = await deps.users.get(session.owner)
    if user is None:
        raise LookupError(f"No registered user for {mask_phone(session.owner)}")
    return user


def invalid_pin_format(deps: HandlerDeps) -> str:
    return f"Invalid PIN. Please enter a {deps.settings.pin_length}-digit PIN:"


async def check_pin(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> Optional[HandlerOutcome]:
    """
    Verify the PIN typed in ``message`` against the owner's stored PIN.

    Returns None when the PIN is correct. Otherwise returns the outcome
    to send back: a format error, the remaining attempts, or a terminal
    response once ``max_pin_attempts`` wrong PINs have been entered.
    """
    pin = message.normalized
    if not is_valid_pin(pin, deps.settings.pin_length):
        return reply(invalid_pin_format(deps))

    if await deps.users.verify_pin(session.owner, pin):
        return None

    attempts = int(session.get(PIN_ATTEMPTS) or 0) + 1
    remaining = deps.settings.max_pin_attempts - attempts
    logger.info(f"Wrong PIN: owner={mask_phone(session.owner)}, attempts={attempts}")

    if remaining <= 0:
        return HandlerOutcome(
            response=BotResponse(text=MAX_PIN_ATTEMPTS_EXCEEDED, end_session=True),
            data_patch={PIN_ATTEMPTS: attempts},
            end_session=True,
        )

    noun = "attempt" if remaining == 1 else "attempts"
    return reply(
        f"Invalid PIN. {remaining} {noun} remaining.",
        data={PIN_ATTEMPTS: attempts},
    )


async def seal_pin(pin: str, deps: HandlerDeps) -> str:
    """Hash a PIN held in session data between the enter and confirm steps."""
    return await asyncio.to_thread(hash_pin, pin, deps.settings.pin_hash_iterations)


async def matches_sealed_pin(pin: str, sealed: Optional[str]) -> bool:
    if not sealed:
        return False
    return await asyncio.to_thread(verify_pin, pin, sealed)


# ---------------------------------------------------------------------------
# Irreversible actions
# ---------------------------------------------------------------------------

def checkpoint(action: Callable[[], Awaitable[HandlerOutcome]]) -> HandlerOutcome:
    """
    Persist ``step=executing`` before ``action`` runs.

    The dispatcher runs ``action`` only once the checkpoint write has won
    the session's version check. A turn that finds the step still at
    ``executing`` must not repeat the action (see ``unconfirmed``).
    """
    return HandlerOutcome(
        response=BotResponse(text=""),
        data_patch={STEP: EXECUTING},
        commit=action,
    )


def unconfirmed(session: Session, deps: HandlerDeps, *, owned_keys: Iterable[str] = ()) -> HandlerOutcome:
    logger.warning(f"Previous action outcome unknown: owner={mask_phone(session.owner)}, state={session.state}")
    return finish(UNCONFIRMED_ACTION, deps, owned_keys=owned_keys)
