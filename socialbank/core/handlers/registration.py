# socialbank/core/handlers/registration.py
"""
ACCOUNT_REGISTRATION flow.

    account  -> account number, checked against core banking
    pin      -> new PIN
    confirm  -> PIN typed again; the user is registered

Session data keys: step, reg_account, reg_pin (hashed).
"""
from __future__ import annotations

from socialbank.core.engine.domain import CanonicalMessage, HandlerOutcome, Session
from socialbank.core.engine.errors import BankingError
from socialbank.core.engine.state_handlers import HandlerDeps, StateHandler
from socialbank.core.engine.states import State
from socialbank.core.handlers.common import (
    STEP,
    is_valid_account_number,
    is_valid_pin,
    matches_sealed_pin,
    reply,
    seal_pin,
)
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

REG_ACCOUNT = "reg_account"
REG_PIN = "reg_pin"
OWNED_KEYS = (STEP, REG_ACCOUNT, REG_PIN)

_ACCOUNT = "account"
_PIN = "pin"
_CONFIRM = "confirm"

ACCOUNT_PROMPT = "Please enter your account number:"


async def _start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    if await deps.users.get(session.owner) is not None:
        return HandlerOutcome(
            response=deps.menus.render(State.WELCOME, prefix="You are already registered.\n\n"),
            next_state=State.WELCOME,
        )
    return reply(ACCOUNT_PROMPT, data={STEP: _ACCOUNT})


async def _on_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    step = session.get(STEP)
    if step == _PIN:
        return await _take_pin(message, deps)
    if step == _CONFIRM:
        return await _confirm_pin(message, session, deps)
    if step == _ACCOUNT:
        return await _take_account(message, deps)
    return await _start(session, deps)


async def _take_account(message: CanonicalMessage, deps: HandlerDeps) -> HandlerOutcome:
    account_number = message.normalized
    if not is_valid_account_number(account_number):
        return reply("Invalid account number. Please enter a valid account number:")

    try:
        account = await deps.banking.get_account(account_number)
    except BankingError as exc:
        logger.warning(f"Account lookup failed during registration: {exc}")
        return reply(
            "We could not verify your account right now. Please try again later.\n\n"
            f"Reply with {deps.main_menu_token} to return to main menu."
        )

    if account is None:
        return reply("Account not found. Please check the account number and try again:")

    return reply(
        f"Account verified: {account.account_name}\n\n"
        f"Please create a {deps.settings.pin_length}-digit PIN:",
        data={STEP: _PIN, REG_ACCOUNT: account_number},
    )


async def _take_pin(message: CanonicalMessage, deps: HandlerDeps) -> HandlerOutcome:
    pin = message.normalized
    if not is_valid_pin(pin, deps.settings.pin_length):
        return reply(f"Invalid PIN. Please enter a {deps.settings.pin_length}-digit PIN:")
    return reply(
        "Please confirm your PIN:",
        data={STEP: _CONFIRM, REG_PIN: await seal_pin(pin, deps)},
    )


async def _confirm_pin(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    pin = message.normalized
    if not await matches_sealed_pin(pin, session.get(REG_PIN)):
        return reply(
            f"PINs do not match. Please create your {deps.settings.pin_length}-digit PIN again:",
            data={STEP: _PIN, REG_PIN: None},
        )

    await deps.users.register(session.owner, session.get(REG_ACCOUNT), pin)
    logger.info(f"User registered: owner={mask_phone(session.owner)}")

    return HandlerOutcome(
        response=deps.menus.render(
            State.WELCOME,
            prefix="Registration successful! ✅\n\nYou can now access all banking services.\n\n",
        ),
        next_state=State.WELCOME,
        data_patch={key: None for key in OWNED_KEYS},
    )


HANDLERS = (
    StateHandler(
        state=State.ACCOUNT_REGISTRATION,
        on_enter=_start,
        on_input=_on_input,
        owned_keys=OWNED_KEYS,
    ),
)
