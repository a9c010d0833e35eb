# socialbank/infra/banking_client.py
"""
Core-banking clients.

EsbClient talks to the bank's ESB over HTTP. Every endpoint takes a JSON
POST carrying the ``api_key`` and answers with an envelope:

    {"status": true|false, "data": {...}, "message": "..."}

Network failures, timeouts and error envelopes surface as BankingError,
except an unknown account on lookup, which is ``None``.

SandboxBankingClient serves fixed demo data for development and tests.
"""
from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import aiohttp

from socialbank.config import Settings
from socialbank.core.engine.domain import (
    AccountProfile,
    Balance,
    BankingResult,
    BillPaymentRequest,
    StatementLine,
    TransferRequest,
)
from socialbank.core.engine.errors import BankingError
from socialbank.core.engine.ports import CoreBankingClient
from socialbank.infra.http_client import get_banking_session
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)


def _mask_account(account_number: str) -> str:
    if len(account_number) <= 4:
        return "****"
    return f"****{account_number[-4:]}"


def _decimal(value: Any) -> Decimal:
    """Parse ESB amounts, which may arrive as numbers or "1,000.00" strings."""
    try:
        return Decimal(str(value).replace(",", "").replace("+", ""))
    except (InvalidOperation, ValueError) as exc:
        raise BankingError(f"Invalid amount in ESB response: {value!r}") from exc


def _error_message(payload: Mapping[str, Any], default: str) -> str:
    errors = payload.get("errors")
    if isinstance(errors, Mapping) and errors.get("error"):
        return str(errors["error"])
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    return default


def _statement_lines(data: Mapping[str, Any]) -> list[StatementLine]:
    return [
        StatementLine(
            date=str(row.get("date", "")),
            description=str(row.get("description", "")),
            amount=_decimal(row.get("amount", 0)),
        )
        for row in data.get("transactions", [])
    ]


class EsbClient(CoreBankingClient):
    """HTTP client for the bank's ESB (aiohttp, shared banking session)."""

    def __init__(self, settings: Settings) -> None:
        if not settings.esb_base_url or not settings.esb_api_key:
            raise ValueError("ESB is not configured (esb_base_url / esb_api_key)")
        self.settings = settings
        self.base_url = settings.esb_base_url.rstrip("/")

    async def _post(self, path: str, payload: dict) -> tuple[int, dict]:
        body = {**payload, "api_key": self.settings.esb_api_key}
        url = f"{self.base_url}{path}"
        session = get_banking_session(self.settings.esb_timeout_seconds)

        try:
            async with session.post(url, json=body) as resp:
                data = await resp.json(content_type=None)
                if not isinstance(data, dict):
                    raise BankingError(f"Unexpected ESB response from {path}", status=resp.status)
                return resp.status, data

        except TimeoutError as exc:
            logger.warning(f"ESB timeout: path={path}")
            raise BankingError("Core banking timed out") from exc

        except aiohttp.ClientError as exc:
            logger.warning(f"ESB network error: path={path}, error={exc}")
            raise BankingError("Core banking unreachable") from exc

        except ValueError as exc:
            logger.warning(f"ESB returned invalid JSON: path={path}")
            raise BankingError("Invalid core banking response") from exc

    async def get_account(self, account_number: str) -> Optional[AccountProfile]:
        status, payload = await self._post(
            self.settings.esb_account_details_path,
            {"account_number": account_number},
        )
        if status == 404 or not payload.get("status"):
            logger.info(f"ESB account lookup failed: account={_mask_account(account_number)}, "
                        f"message={_error_message(payload, 'not found')}")
            return None

        profile = (payload.get("data") or {}).get("bank_profile") or {}
        return AccountProfile(
            account_number=str(profile.get("account_number", account_number)),
            account_name=str(profile.get("account_name") or profile.get("name") or ""),
            status=str(profile.get("status", "ACTIVE")),
            raw=profile,
        )

    async def get_balance(self, account_number: str) -> Balance:
        status, payload = await self._post(
            self.settings.esb_account_details_path,
            {"account_number": account_number},
        )
        if status >= 400 or not payload.get("status"):
            raise BankingError(_error_message(payload, "Balance unavailable"), status=status)

        profile = (payload.get("data") or {}).get("bank_profile") or {}
        available = profile.get("available_balance", profile.get("balance", 0))
        return Balance(
            available=_decimal(available),
            actual=_decimal(profile.get("actual_balance", profile.get("current_balance", available))),
            currency=str(profile.get("currency") or self.settings.currency),
        )

    async def mini_statement(self, account_number: str, limit: int = 5) -> list[StatementLine]:
        status, payload = await self._post(
            self.settings.esb_mini_statement_path,
            {"account_number": account_number, "limit": limit},
        )
        if status >= 400 or not payload.get("status"):
            raise BankingError(_error_message(payload, "Mini statement unavailable"), status=status)
        return _statement_lines(payload.get("data") or {})[:limit]

    async def full_statement(self, account_number: str, start: date, end: date) -> list[StatementLine]:
        status, payload = await self._post(
            self.settings.esb_full_statement_path,
            {
                "account_number": account_number,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
        )
        if status >= 400 or not payload.get("status"):
            raise BankingError(_error_message(payload, "Statement unavailable"), status=status)
        return _statement_lines(payload.get("data") or {})

    async def transfer(self, request: TransferRequest) -> BankingResult:
        status, payload = await self._post(
            self.settings.esb_transfer_path,
            {
                "from_account": request.from_account,
                "to_account": request.to_account,
                "amount": f"{request.amount:.2f}",
                "description": request.description,
                "transfer_type": request.kind.value,
            },
        )
        if status != 201 or not payload.get("status"):
            message = _error_message(payload, "Transfer failed")
            logger.warning(f"ESB transfer rejected: to={_mask_account(request.to_account)}, "
                           f"status={status}, message={message}")
            return BankingResult(ok=False, message=message)

        data = payload.get("data") or {}
        return BankingResult(
            ok=True,
            message=str(payload.get("message") or "Transfer successful"),
            reference=data.get("reference") or data.get("transaction_reference"),
        )

    async def pay_bill(self, request: BillPaymentRequest) -> BankingResult:
        status, payload = await self._post(
            self.settings.esb_bill_payment_path,
            {
                "from_account": request.from_account,
                "biller_code": request.biller_code,
                "bill_account": request.bill_account,
                "amount": f"{request.amount:.2f}",
            },
        )
        if status >= 400 or not payload.get("status"):
            return BankingResult(ok=False, message=_error_message(payload, "Payment failed"))

        data = payload.get("data") or {}
        return BankingResult(
            ok=True,
            message=str(payload.get("message") or "Payment successful"),
            reference=data.get("reference") or data.get("transaction_reference"),
        )


_SANDBOX_ACCOUNTS = {
    "1234567890": "JOHN DOE",
    "0987654321": "JANE DOE",
}

_SANDBOX_STATEMENT = (
    ("2024-01-15", "ATM WITHDRAWAL", "-2000.00"),
    ("2024-01-14", "MPESA TRANSFER", "-1500.00"),
    ("2024-01-13", "SALARY CREDIT", "45000.00"),
    ("2024-01-12", "UTILITY BILL", "-3500.00"),
    ("2024-01-11", "BANK TRANSFER", "-5000.00"),
)


class SandboxBankingClient(CoreBankingClient):
    """
    Deterministic in-memory core banking.

    Known accounts resolve by number; every account shows the same
    balance (25,000.00 available / 27,500.00 actual) and statement.
    Transfers above the available balance are declined.
    """

    def __init__(self, accounts: Mapping[str, str] | None = None, currency: str = "KES") -> None:
        self.accounts = dict(_SANDBOX_ACCOUNTS if accounts is None else accounts)
        self.currency = currency
        self.available = Decimal("25000.00")
        self.actual = Decimal("27500.00")
        self.transfers: list[TransferRequest] = []
        self.bill_payments: list[BillPaymentRequest] = []

    @staticmethod
    def _reference(prefix: str) -> str:
        return f"{prefix}{uuid.uuid4().hex[:10].upper()}"

    async def get_account(self, account_number: str) -> Optional[AccountProfile]:
        name = self.accounts.get(account_number)
        if name is None:
            return None
        return AccountProfile(account_number=account_number, account_name=name)

    async def get_balance(self, account_number: str) -> Balance:
        return Balance(available=self.available, actual=self.actual, currency=self.currency)

    async def mini_statement(self, account_number: str, limit: int = 5) -> list[StatementLine]:
        return [
            StatementLine(date=d, description=desc, amount=Decimal(amount))
            for d, desc, amount in _SANDBOX_STATEMENT[:limit]
        ]

    async def full_statement(self, account_number: str, start: date, end: date) -> list[StatementLine]:
        return [
            StatementLine(date=d, description=desc, amount=Decimal(amount))
            for d, desc, amount in _SANDBOX_STATEMENT
        ]

    async def transfer(self, request: TransferRequest) -> BankingResult:
        if request.amount > self.available:
            return BankingResult(ok=False, message="Insufficient funds")
        self.transfers.append(request)
        return BankingResult(ok=True, message="Transfer successful", reference=self._reference("TRX"))

    async def pay_bill(self, request: BillPaymentRequest) -> BankingResult:
        if request.amount > self.available:
            return BankingResult(ok=False, message="Insufficient funds")
        self.bill_payments.append(request)
        return BankingResult(ok=True, message="Payment successful", reference=self._reference("BP"))


def build_banking_client(settings: Settings) -> CoreBankingClient:
    if settings.banking_backend == "esb":
        logger.info(f"Core banking: ESB at {settings.esb_base_url}")
        return EsbClient(settings)
    logger.info("Core banking: sandbox")
    return SandboxBankingClient(currency=settings.currency)
