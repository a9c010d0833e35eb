# tests/test_banking_client.py
"""Tests for the sandbox and ESB core-banking clients."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_settings
from socialbank.core.engine.domain import BillPaymentRequest, TransferKind, TransferRequest
from socialbank.core.engine.errors import BankingError
from socialbank.infra.banking_client import (
    EsbClient,
    SandboxBankingClient,
    build_banking_client,
)


def _transfer(amount: str = "1000", kind: TransferKind = TransferKind.INTERNAL) -> TransferRequest:
    return TransferRequest(kind=kind, from_account="1234567890", to_account="0987654321", amount=Decimal(amount))


# ============================================================================
# Sandbox
# ============================================================================

class TestSandboxBankingClient:

    def setup_method(self):
        self.client = SandboxBankingClient()

    @pytest.mark.asyncio
    async def test_known_account(self):
        profile = await self.client.get_account("1234567890")
        assert profile.account_name == "JOHN DOE"
        assert await self.client.get_account("5555555555") is None

    @pytest.mark.asyncio
    async def test_balance(self):
        balance = await self.client.get_balance("1234567890")
        assert balance.available == Decimal("25000.00")
        assert balance.actual == Decimal("27500.00")
        assert balance.currency == "KES"

    @pytest.mark.asyncio
    async def test_statements(self):
        mini = await self.client.mini_statement("1234567890", limit=3)
        full = await self.client.full_statement("1234567890", date(2024, 1, 1), date(2024, 1, 31))

        assert len(mini) == 3
        assert mini[0].description == "ATM WITHDRAWAL"
        assert len(full) == 5

    @pytest.mark.asyncio
    async def test_transfer_records_request(self):
        result = await self.client.transfer(_transfer())

        assert result.ok
        assert result.reference.startswith("TRX")
        assert self.client.transfers == [_transfer()]

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        result = await self.client.transfer(_transfer("25000.01"))
        assert not result.ok
        assert result.message == "Insufficient funds"
        assert self.client.transfers == []

    @pytest.mark.asyncio
    async def test_bill_payment(self):
        request = BillPaymentRequest(
            biller_code="KPLC", bill_account="123456", amount=Decimal("500"), from_account="1234567890",
        )
        result = await self.client.pay_bill(request)
        assert result.ok
        assert result.reference.startswith("BP")


# ============================================================================
# ESB
# ============================================================================

class TestEsbClient:

    def setup_method(self):
        self.settings = make_settings(
            banking_backend="esb",
            esb_base_url="https://esb.example.com/",
            esb_api_key="esb-key",
        )
        self.client = EsbClient(self.settings)

    def test_requires_configuration(self):
        with pytest.raises(ValueError):
            EsbClient(make_settings(banking_backend="esb"))

    def test_base_url_is_normalized(self):
        assert self.client.base_url == "https://esb.example.com"

    @pytest.mark.asyncio
    async def test_get_account(self):
        body = {"status": True, "data": {"bank_profile": {"account_number": "1234567890", "account_name": "JOHN DOE"}}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(200, body))) as post:
            profile = await self.client.get_account("1234567890")

        assert profile.account_name == "JOHN DOE"
        post.assert_awaited_once_with(self.settings.esb_account_details_path, {"account_number": "1234567890"})

    @pytest.mark.asyncio
    async def test_unknown_account_is_none(self):
        body = {"status": False, "errors": {"error": "Account not found"}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(404, body))):
            assert await self.client.get_account("5555555555") is None

    @pytest.mark.asyncio
    async def test_balance_parses_formatted_amounts(self):
        body = {"status": True, "data": {"bank_profile": {
            "available_balance": "1,000.00", "actual_balance": "1,250.50", "currency": "KES",
        }}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(200, body))):
            balance = await self.client.get_balance("1234567890")

        assert balance.available == Decimal("1000.00")
        assert balance.actual == Decimal("1250.50")

    @pytest.mark.asyncio
    async def test_balance_error_envelope_raises(self):
        body = {"status": False, "message": "Service down"}
        with patch.object(self.client, "_post", AsyncMock(return_value=(503, body))):
            with pytest.raises(BankingError) as exc_info:
                await self.client.get_balance("1234567890")

        assert str(exc_info.value) == "Service down"
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_invalid_amount_raises(self):
        body = {"status": True, "data": {"bank_profile": {"available_balance": "lots"}}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(200, body))):
            with pytest.raises(BankingError):
                await self.client.get_balance("1234567890")

    @pytest.mark.asyncio
    async def test_mini_statement(self):
        body = {"status": True, "data": {"transactions": [
            {"date": "2024-01-15", "description": "ATM", "amount": "-2,000.00"},
            {"date": "2024-01-14", "description": "SALARY", "amount": 45000},
        ]}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(200, body))):
            lines = await self.client.mini_statement("1234567890", limit=1)

        assert len(lines) == 1
        assert lines[0].amount == Decimal("-2000.00")

    @pytest.mark.asyncio
    async def test_transfer_success(self):
        body = {"status": True, "message": "Done", "data": {"reference": "REF123"}}
        with patch.object(self.client, "_post", AsyncMock(return_value=(201, body))) as post:
            result = await self.client.transfer(_transfer("1000", TransferKind.BANK))

        assert result.ok
        assert result.reference == "REF123"
        sent = post.await_args.args[1]
        assert sent["amount"] == "1000.00"
        assert sent["transfer_type"] == "bank"

    @pytest.mark.asyncio
    async def test_transfer_rejected_without_201(self):
        body = {"status": True, "message": "Queued"}
        with patch.object(self.client, "_post", AsyncMock(return_value=(200, body))):
            result = await self.client.transfer(_transfer())

        assert not result.ok
        assert result.message == "Queued"

    @pytest.mark.asyncio
    async def test_network_failure_propagates(self):
        with patch.object(self.client, "_post", AsyncMock(side_effect=BankingError("Core banking unreachable"))):
            with pytest.raises(BankingError):
                await self.client.transfer(_transfer())


def test_build_banking_client():
    assert isinstance(build_banking_client(make_settings()), SandboxBankingClient)

    esb = build_banking_client(make_settings(
        banking_backend="esb", esb_base_url="https://esb.example.com", esb_api_key="k",
    ))
    assert isinstance(esb, EsbClient)
