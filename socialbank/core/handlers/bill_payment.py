# socialbank/core/handlers/bill_payment.py
"""
BILL_PAYMENT_INIT flow.

    bill_type -> account -> amount (variable billers only) -> confirm -> pin -> executing -> pay

Session data keys: step, bill_type, bill_account, amount, pin_attempts.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from socialbank.core.engine.domain import BillPaymentRequest, CanonicalMessage, HandlerOutcome, Session
from socialbank.core.engine.errors import BankingError
from socialbank.core.engine.state_handlers import HandlerDeps, StateHandler
from socialbank.core.engine.states import State
from socialbank.core.handlers.common import (
    CANCEL,
    EXECUTING,
    PIN_ATTEMPTS,
    STEP,
    check_pin,
    checkpoint,
    choice_response,
    confirm_response,
    finish,
    format_amount,
    parse_amount,
    parse_confirmation,
    reply,
    require_user,
    unconfirmed,
)
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

BILL_TYPE = "bill_type"
BILL_ACCOUNT = "bill_account"
AMOUNT = "amount"
OWNED_KEYS = (STEP, BILL_TYPE, BILL_ACCOUNT, AMOUNT, PIN_ATTEMPTS)

_BILL_TYPE = "bill_type"
_ACCOUNT = "account"
_AMOUNT = "amount"
_CONFIRM = "confirm"
_PIN = "pin"


@dataclass(frozen=True)
class Biller:
    token: str
    name: str
    code: str
    account_pattern: re.Pattern
    fixed_amount: Optional[Decimal] = None


BILLERS: dict[str, Biller] = {
    b.token: b for b in (
        Biller("1", "Electricity", "KPLC", re.compile(r"^\d{6}$")),
        Biller("2", "Water", "WATER", re.compile(r"^\d{8}$")),
        Biller("3", "TV Subscription", "TV", re.compile(r"^\d{10}$"), fixed_amount=Decimal("1500.00")),
        Biller("4", "Internet", "NET", re.compile(r"^\d{8}$"), fixed_amount=Decimal("2999.00")),
    )
}


def _biller_for(text: str) -> Optional[Biller]:
    lowered = text.strip().casefold()
    for biller in BILLERS.values():
        if lowered in (biller.token, biller.name.casefold()):
            return biller
    return None


def _bill_type_menu(prefix: str = "") -> HandlerOutcome:
    return HandlerOutcome(
        response=choice_response(
            f"{prefix}Please select the type of bill to pay:",
            [(b.token, b.name) for b in BILLERS.values()],
        ),
        data_patch={STEP: _BILL_TYPE},
    )


def _confirmation(biller: Biller, account: str, amount: Decimal, deps: HandlerDeps) -> HandlerOutcome:
    summary = (
        "Please confirm bill payment:\n\n"
        f"Type: {biller.name}\n"
        f"Account: {account}\n"
        f"Amount: {format_amount(amount, deps.settings.currency)}"
    )
    return HandlerOutcome(
        response=confirm_response(summary),
        data_patch={STEP: _CONFIRM, BILL_ACCOUNT: account, AMOUNT: str(amount)},
    )


async def _start(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return _bill_type_menu()


async def _on_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    step = session.get(STEP)
    text = message.normalized

    if step == _BILL_TYPE:
        biller = _biller_for(text)
        if biller is None:
            return _bill_type_menu(prefix="Invalid selection. ")
        return reply(
            f"Please enter your {biller.name} account number:",
            data={STEP: _ACCOUNT, BILL_TYPE: biller.token},
        )

    if step == EXECUTING:
        return unconfirmed(session, deps, owned_keys=OWNED_KEYS)

    biller = BILLERS.get(session.get(BILL_TYPE) or "")
    if biller is None:
        return _bill_type_menu()

    if step == _ACCOUNT:
        if not biller.account_pattern.match(text):
            return reply(f"Invalid account number format for {biller.name}. Please try again:")
        if biller.fixed_amount is not None:
            return _confirmation(biller, text, biller.fixed_amount, deps)
        return reply("Please enter the amount to pay:", data={STEP: _AMOUNT, BILL_ACCOUNT: text})

    if step == _AMOUNT:
        amount = parse_amount(text)
        if amount is None:
            return reply("Invalid amount. Please enter a valid number:")
        return _confirmation(biller, session.get(BILL_ACCOUNT), amount, deps)

    if step == _CONFIRM:
        choice = parse_confirmation(text)
        if choice is None:
            return HandlerOutcome(
                response=confirm_response("Invalid response. Please confirm or cancel the payment:"),
            )
        if choice == CANCEL:
            return finish("Payment cancelled.", deps, owned_keys=OWNED_KEYS)
        return reply("Please enter your PIN to complete the payment:", data={STEP: _PIN})

    if step == _PIN:
        return await _pay(message, session, biller, deps)

    return _bill_type_menu()


async def _pay(message: CanonicalMessage, session: Session, biller: Biller, deps: HandlerDeps) -> HandlerOutcome:
    failure = await check_pin(message, session, deps)
    if failure is not None:
        return failure

    user = await require_user(session, deps)
    amount = Decimal(session.get(AMOUNT))
    account = session.get(BILL_ACCOUNT)
    request = BillPaymentRequest(
        biller_code=biller.code,
        bill_account=account,
        amount=amount,
        from_account=user.account_number,
    )

    async def pay() -> HandlerOutcome:
        try:
            result = await deps.banking.pay_bill(request)
        except BankingError as exc:
            logger.error(f"Bill payment failed: owner={mask_phone(session.owner)}, biller={biller.code}, error={exc}")
            return finish(f"Payment failed: {exc}", deps, owned_keys=OWNED_KEYS)

        if not result.ok:
            return finish(f"Payment failed: {result.message}", deps, owned_keys=OWNED_KEYS)

        logger.info(f"Bill paid: owner={mask_phone(session.owner)}, biller={biller.code}, ref={result.reference}")
        return finish(
            "Payment successful! ✅\n\n"
            f"Bill Type: {biller.name}\n"
            f"Account: {account}\n"
            f"Amount: {format_amount(amount, deps.settings.currency)}\n"
            f"Reference: {result.reference}",
            deps,
            owned_keys=OWNED_KEYS,
        )

    return checkpoint(pay)


HANDLERS = (
    StateHandler(
        state=State.BILL_PAYMENT_INIT,
        on_enter=_start,
        on_input=_on_input,
        owned_keys=OWNED_KEYS,
    ),
)
