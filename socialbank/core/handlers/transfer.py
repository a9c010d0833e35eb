# socialbank/core/handlers/transfer.py
"""
Money transfer flows: INTERNAL_TRANSFER, BANK_TRANSFER, MOBILE_MONEY_TRANSFER.

All three share one step sequence and differ in how the recipient is
validated and which fee applies:

    recipient -> amount -> confirm (1 Confirm / 2 Cancel) -> pin -> executing -> transfer

Session data keys: step, recipient, amount, pin_attempts.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from socialbank.core.engine.domain import (
    CanonicalMessage,
    HandlerOutcome,
    Session,
    TransferKind,
    TransferRequest,
)
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
    confirm_response,
    finish,
    format_amount,
    is_valid_account_number,
    normalize_msisdn,
    parse_amount,
    parse_confirmation,
    reply,
    require_user,
    unconfirmed,
)
from socialbank.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

RECIPIENT = "recipient"
AMOUNT = "amount"
OWNED_KEYS = (STEP, RECIPIENT, AMOUNT, PIN_ATTEMPTS)

_RECIPIENT = "recipient"
_AMOUNT = "amount"
_CONFIRM = "confirm"
_PIN = "pin"


@dataclass(frozen=True)
class TransferFlow:
    state: str
    kind: TransferKind
    label: str
    recipient_prompt: str
    invalid_recipient: str


FLOWS = (
    TransferFlow(
        state=State.INTERNAL_TRANSFER,
        kind=TransferKind.INTERNAL,
        label="Internal Transfer",
        recipient_prompt="Please enter recipient's account number:",
        invalid_recipient="Invalid account number. Please enter a valid account number:",
    ),
    TransferFlow(
        state=State.BANK_TRANSFER,
        kind=TransferKind.BANK,
        label="Bank Transfer",
        recipient_prompt="Please enter recipient's bank account number:",
        invalid_recipient="Invalid account number. Please enter a valid bank account number:",
    ),
    TransferFlow(
        state=State.MOBILE_MONEY_TRANSFER,
        kind=TransferKind.MOBILE_MONEY,
        label="Mobile Money",
        recipient_prompt="Please enter recipient's mobile number:",
        invalid_recipient="Invalid mobile number. Please enter a valid mobile number:",
    ),
)


def transfer_fee(kind: TransferKind, amount: Decimal, deps: HandlerDeps) -> Decimal:
    s = deps.settings
    if kind == TransferKind.BANK:
        fixed, percent = s.bank_transfer_fixed_fee, s.bank_transfer_fee_percent
    elif kind == TransferKind.MOBILE_MONEY:
        fixed, percent = s.mobile_money_fixed_fee, s.mobile_money_fee_percent
    else:
        return Decimal("0.00")
    fee = Decimal(str(fixed)) + amount * Decimal(str(percent)) / Decimal(100)
    return fee.quantize(Decimal("0.01"))


def _amount_error(amount: Decimal, deps: HandlerDeps) -> Optional[str]:
    s = deps.settings
    if amount < Decimal(str(s.min_transaction_amount)):
        return f"Amount must be at least {format_amount(s.min_transaction_amount, s.currency)}. Please enter a valid amount:"
    if amount > Decimal(str(s.max_transaction_amount)):
        return f"Amount cannot exceed {format_amount(s.max_transaction_amount, s.currency)}. Please enter a valid amount:"
    return None


def _summary(flow: TransferFlow, recipient: str, amount: Decimal, deps: HandlerDeps) -> str:
    currency = deps.settings.currency
    fee = transfer_fee(flow.kind, amount, deps)
    lines = [
        "Please confirm transfer:",
        "",
        f"Type: {flow.label}",
        f"To: {recipient}",
        f"Amount: {format_amount(amount, currency)}",
    ]
    if fee:
        lines.append(f"Fee: {format_amount(fee, currency)}")
        lines.append(f"Total: {format_amount(amount + fee, currency)}")
    return "\n".join(lines)


def _make_handler(flow: TransferFlow) -> StateHandler:

    async def on_enter(session: Session, deps: HandlerDeps) -> HandlerOutcome:
        return reply(flow.recipient_prompt, data={STEP: _RECIPIENT})

    async def on_input(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
        step = session.get(STEP)
        text = message.normalized

        if step == _RECIPIENT:
            return await _take_recipient(text, deps)
        if step == _AMOUNT:
            return _take_amount(text, session, deps)
        if step == _CONFIRM:
            return _take_confirmation(text, session, deps)
        if step == _PIN:
            return await _execute(message, session, deps)
        if step == EXECUTING:
            return unconfirmed(session, deps, owned_keys=OWNED_KEYS)
        return await on_enter(session, deps)

    async def _take_recipient(text: str, deps: HandlerDeps) -> HandlerOutcome:
        if flow.kind == TransferKind.MOBILE_MONEY:
            recipient = normalize_msisdn(text, deps.settings.msisdn_country_code)
            if recipient is None:
                return reply(flow.invalid_recipient)
        else:
            if not is_valid_account_number(text):
                return reply(flow.invalid_recipient)
            recipient = text

        if flow.kind == TransferKind.INTERNAL:
            try:
                account = await deps.banking.get_account(recipient)
            except BankingError as exc:
                logger.warning(f"Recipient lookup failed: {exc}")
                return finish("We could not verify the recipient account right now. Please try again later.", deps,
                              owned_keys=OWNED_KEYS)
            if account is None:
                return reply("Recipient account not found. Please enter a valid account number:")

        return reply("Please enter the amount to transfer:", data={STEP: _AMOUNT, RECIPIENT: recipient})

    def _take_amount(text: str, session: Session, deps: HandlerDeps) -> HandlerOutcome:
        amount = parse_amount(text)
        if amount is None:
            return reply("Invalid amount. Please enter a valid number:")
        error = _amount_error(amount, deps)
        if error:
            return reply(error)
        return HandlerOutcome(
            response=confirm_response(_summary(flow, session.get(RECIPIENT), amount, deps)),
            data_patch={STEP: _CONFIRM, AMOUNT: str(amount)},
        )

    def _take_confirmation(text: str, session: Session, deps: HandlerDeps) -> HandlerOutcome:
        choice = parse_confirmation(text)
        if choice is None:
            return HandlerOutcome(
                response=confirm_response("Invalid response. Please confirm or cancel the transfer:"),
            )
        if choice == CANCEL:
            return finish("Transfer cancelled.", deps, owned_keys=OWNED_KEYS)
        return reply("Please enter your PIN to complete the transfer:", data={STEP: _PIN})

    async def _execute(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
        failure = await check_pin(message, session, deps)
        if failure is not None:
            return failure

        user = await require_user(session, deps)
        amount = Decimal(session.get(AMOUNT))
        recipient = session.get(RECIPIENT)
        request = TransferRequest(
            kind=flow.kind,
            from_account=user.account_number,
            to_account=recipient,
            amount=amount,
            description=flow.label,
        )

        async def transfer() -> HandlerOutcome:
            try:
                result = await deps.banking.transfer(request)
            except BankingError as exc:
                logger.error(f"Transfer failed: owner={mask_phone(session.owner)}, kind={flow.kind.value}, error={exc}")
                return finish(f"Transfer failed: {exc}", deps, owned_keys=OWNED_KEYS)

            if not result.ok:
                return finish(f"Transfer failed: {result.message}", deps, owned_keys=OWNED_KEYS)

            logger.info(f"Transfer completed: owner={mask_phone(session.owner)}, kind={flow.kind.value}, ref={result.reference}")
            return finish(
                "Transfer successful! ✅\n\n"
                f"To: {recipient}\n"
                f"Amount: {format_amount(amount, deps.settings.currency)}\n"
                f"Reference: {result.reference}",
                deps,
                owned_keys=OWNED_KEYS,
            )

        return checkpoint(transfer)

    return StateHandler(state=flow.state, on_enter=on_enter, on_input=on_input, owned_keys=OWNED_KEYS)


HANDLERS = tuple(_make_handler(flow) for flow in FLOWS)
