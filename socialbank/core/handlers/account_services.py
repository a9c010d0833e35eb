# socialbank/core/handlers/account_services.py
"""
Account services: BALANCE_INQUIRY, MINI_STATEMENT, FULL_STATEMENT, PIN_MANAGEMENT.

Every service starts by asking for the PIN. Data keys:
    BALANCE_INQUIRY / MINI_STATEMENT   step, pin_attempts
    FULL_STATEMENT                     step, pin_attempts, start_date
    PIN_MANAGEMENT                     step, pin_attempts, new_pin (hashed)
"""
from __future__ import annotations

from socialbank.core.engine.domain import CanonicalMessage, HandlerOutcome, Session, StatementLine
from socialbank.core.engine.errors import BankingError
from socialbank.core.engine.state_handlers import HandlerDeps, StateHandler
from socialbank.core.engine.states import State
from socialbank.core.handlers.common import (
    EXECUTING,
    PIN_ATTEMPTS,
    STEP,
    check_pin,
    checkpoint,
    finish,
    format_amount,
    is_valid_pin,
    matches_sealed_pin,
    parse_date,
    parse_iso_date,
    reply,
    require_user,
    seal_pin,
    unconfirmed,
)
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

START_DATE = "start_date"
NEW_PIN = "new_pin"

_PIN = "pin"
_START_DATE = "start_date"
_END_DATE = "end_date"
_CURRENT_PIN = "current_pin"
_NEW_PIN = "new_pin"
_CONFIRM_PIN = "confirm_pin"

SERVICE_UNAVAILABLE = "We could not reach your bank right now. Please try again later."


def _statement_text(title: str, lines: list[StatementLine], currency: str) -> str:
    if not lines:
        return f"{title}\n\nNo transactions found for this period."
    rows = [f"{line.date} | {line.description} | {currency} {line.amount:+,.2f}" for line in lines]
    return f"{title}\n\n" + "\n".join(rows)


# ---------------------------------------------------------------------------
# BALANCE_INQUIRY
# ---------------------------------------------------------------------------

BALANCE_KEYS = (STEP, PIN_ATTEMPTS)


async def _balance_start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return reply("Please enter your PIN to view balance:", data={STEP: _PIN})


async def _balance_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    if session.get(STEP) != _PIN:
        return await _balance_start(session, deps)

    failure = await check_pin(message, session, deps)
    if failure is not None:
        return failure

    user = await require_user(session, deps)
    try:
        balance = await deps.banking.get_balance(user.account_number)
    except BankingError as exc:
        logger.error(f"Balance inquiry failed: owner={mask_phone(session.owner)}, error={exc}")
        return finish(SERVICE_UNAVAILABLE, deps, owned_keys=BALANCE_KEYS)

    return finish(
        "Your current balance is:\n\n"
        f"Available Balance: {format_amount(balance.available, balance.currency)}\n"
        f"Actual Balance: {format_amount(balance.actual, balance.currency)}",
        deps,
        owned_keys=BALANCE_KEYS,
    )


# ---------------------------------------------------------------------------
# MINI_STATEMENT
# ---------------------------------------------------------------------------

async def _mini_start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return reply("Please enter your PIN to view mini statement:", data={STEP: _PIN})


async def _mini_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    if session.get(STEP) != _PIN:
        return await _mini_start(session, deps)

    failure = await check_pin(message, session, deps)
    if failure is not None:
        return failure

    user = await require_user(session, deps)
    try:
        lines = await deps.banking.mini_statement(user.account_number, limit=5)
    except BankingError as exc:
        logger.error(f"Mini statement failed: owner={mask_phone(session.owner)}, error={exc}")
        return finish(SERVICE_UNAVAILABLE, deps, owned_keys=BALANCE_KEYS)

    return finish(
        _statement_text(f"Last {len(lines)} Transactions:", lines, deps.settings.currency),
        deps,
        owned_keys=BALANCE_KEYS,
    )


# ---------------------------------------------------------------------------
# FULL_STATEMENT
# ---------------------------------------------------------------------------

STATEMENT_KEYS = (STEP, PIN_ATTEMPTS, START_DATE)

INVALID_DATE = "Invalid date format. Please enter date as DD/MM/YYYY:"


async def _statement_start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return reply("Please enter your PIN to proceed:", data={STEP: _PIN})


async def _statement_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    step = session.get(STEP)
    text = message.normalized

    if step == _PIN:
        failure = await check_pin(message, session, deps)
        if failure is not None:
            return failure
        return reply("Please enter start date (DD/MM/YYYY):", data={STEP: _START_DATE, PIN_ATTEMPTS: None})

    if step == _START_DATE:
        start = parse_date(text)
        if start is None:
            return reply(INVALID_DATE)
        return reply(
            "Please enter end date (DD/MM/YYYY):",
            data={STEP: _END_DATE, START_DATE: start.isoformat()},
        )

    if step == _END_DATE:
        end = parse_date(text)
        if end is None:
            return reply(INVALID_DATE)
        start = parse_iso_date(session.get(START_DATE))
        if start is None:
            return await _statement_start(session, deps)
        if end < start:
            return reply("End date cannot be before start date. Please enter end date (DD/MM/YYYY):")

        user = await require_user(session, deps)
        try:
            lines = await deps.banking.full_statement(user.account_number, start, end)
        except BankingError as exc:
            logger.error(f"Full statement failed: owner={mask_phone(session.owner)}, error={exc}")
            return finish(SERVICE_UNAVAILABLE, deps, owned_keys=STATEMENT_KEYS)

        title = f"Statement for {start:%d/%m/%Y} to {end:%d/%m/%Y}:"
        return finish(_statement_text(title, lines, deps.settings.currency), deps, owned_keys=STATEMENT_KEYS)

    return await _statement_start(session, deps)


# ---------------------------------------------------------------------------
# PIN_MANAGEMENT
# ---------------------------------------------------------------------------

PIN_KEYS = (STEP, PIN_ATTEMPTS, NEW_PIN)


async def _pin_start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return reply("Please enter your current PIN:", data={STEP: _CURRENT_PIN})


async def _pin_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    step = session.get(STEP)
    pin = message.normalized
    pin_length = deps.settings.pin_length

    if step == _CURRENT_PIN:
        failure = await check_pin(message, session, deps)
        if failure is not None:
            return failure
        return reply("Please enter your new PIN:", data={STEP: _NEW_PIN, PIN_ATTEMPTS: None})

    if step == _NEW_PIN:
        if not is_valid_pin(pin, pin_length):
            return reply(f"Invalid PIN. Please enter a {pin_length}-digit PIN:")
        return reply("Please confirm your new PIN:", data={STEP: _CONFIRM_PIN, NEW_PIN: await seal_pin(pin, deps)})

    if step == _CONFIRM_PIN:
        if not await matches_sealed_pin(pin, session.get(NEW_PIN)):
            return reply(
                "PINs do not match. Please enter your new PIN again:",
                data={STEP: _NEW_PIN, NEW_PIN: None},
            )

        async def change() -> HandlerOutcome:
            await deps.users.change_pin(session.owner, pin)
            logger.info(f"PIN changed: owner={mask_phone(session.owner)}")
            return finish("Your PIN has been successfully changed. ✅", deps, owned_keys=PIN_KEYS)

        return checkpoint(change)

    if step == EXECUTING:
        return unconfirmed(session, deps, owned_keys=PIN_KEYS)

    return await _pin_start(session, deps)


HANDLERS = (
    StateHandler(
        state=State.BALANCE_INQUIRY,
        on_enter=_balance_start,
        on_input=_balance_input,
        owned_keys=BALANCE_KEYS,
    ),
    StateHandler(
        state=State.MINI_STATEMENT,
        on_enter=_mini_start,
        on_input=_mini_input,
        owned_keys=BALANCE_KEYS,
    ),
    StateHandler(
        state=State.FULL_STATEMENT,
        on_enter=_statement_start,
        on_input=_statement_input,
        owned_keys=STATEMENT_KEYS,
    ),
    StateHandler(
        state=State.PIN_MANAGEMENT,
        on_enter=_pin_start,
        on_input=_pin_input,
        owned_keys=PIN_KEYS,
    ),
)
