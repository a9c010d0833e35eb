# tests/test_dispatcher.py
"""End-to-end dialogue tests: adapter -> engine -> dispatcher -> handlers -> in-memory stores."""
from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from conftest import ACCOUNT, OTP_CODE, OWNER, PIN, Harness
from socialbank.core import texts
from socialbank.core.engine.errors import SessionConflict
from socialbank.core.engine.states import State
from socialbank.core.handlers.common import UNCONFIRMED_ACTION
from socialbank.infra.metrics import get_metrics_collector


# ============================================================================
# Entry
# ============================================================================

class TestFirstContact:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_new_ussd_caller_gets_unregistered_menu(self):
        result = await self.h.dial("")

        assert result.state == State.WELCOME
        assert result.session_id is not None
        assert "you'll need to register first" in result.response.text
        assert "1. Register" in result.response.text
        assert "2. Help" in result.response.text
        assert self.h.ussd.adapter.format(result.response)["type"] == "CON"

        session = await self.h.sessions.get(result.session_id)
        assert session.state == State.WELCOME
        assert session.conversation_id == "ATUid_1"

    @pytest.mark.asyncio
    async def test_whatsapp_greets_by_contact_name(self):
        result = await self.h.wa("Hi")
        assert result.response.text.startswith("Hello John!")
        assert result.state == State.WELCOME

    @pytest.mark.asyncio
    async def test_registered_owner_sees_member_menu(self):
        await self.h.register()
        result = await self.h.wa("Hi")
        assert "2. Money Transfer" in result.response.text
        assert "4. Account Services" in result.response.text
        assert "To exit at any time, reply with 000." in result.response.text

    @pytest.mark.asyncio
    async def test_whatsapp_reply_is_delivered_out_of_band(self):
        result = await self.h.wa("Hi")
        self.h.delivered.assert_awaited_once()
        recipient, response, options = self.h.delivered.await_args.args
        assert recipient == OWNER
        assert response == result.response
        assert options["business_phone_id"] == "PNID_1"

    @pytest.mark.asyncio
    async def test_ussd_reply_is_not_delivered_out_of_band(self):
        deliver = AsyncMock(return_value=True)
        self.h.ussd.adapter.deliver = deliver
        await self.h.dial("")
        deliver.assert_not_awaited()


# ============================================================================
# Menu navigation
# ============================================================================

class TestMenuNavigation:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_option_two_moves_logged_in_owner_to_transfer_menu(self):
        await self.h.register()
        await self.h.login()
        await self.h.wa("Hi")

        result = await self.h.wa("2")

        assert result.state == State.TRANSFER_INIT
        assert result.response.text.startswith("Please select transfer type:")
        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session.state == State.TRANSFER_INIT

    @pytest.mark.asyncio
    async def test_label_resolves_like_token(self):
        await self.h.register()
        await self.h.login()
        await self.h.wa("Hi")

        result = await self.h.wa("money TRANSFER")
        assert result.state == State.TRANSFER_INIT

    @pytest.mark.asyncio
    async def test_invalid_selection_keeps_state(self):
        await self.h.wa("Hi")
        result = await self.h.wa("9")

        assert result.state == State.WELCOME
        assert result.response.text.startswith("Invalid selection.")

    @pytest.mark.asyncio
    async def test_guest_cannot_pick_member_only_option(self):
        await self.h.wa("Hi")
        result = await self.h.wa("4")
        assert result.response.text.startswith("Invalid selection.")

    @pytest.mark.asyncio
    async def test_help_then_any_reply_returns_to_menu(self):
        await self.h.wa("Hi")
        help_result = await self.h.wa("2")
        assert help_result.state == State.HELP
        assert "Social Banking Help" in help_result.response.text

        back = await self.h.wa("ok")
        assert back.state == State.WELCOME
        assert "1. Register" in back.response.text

    @pytest.mark.asyncio
    async def test_main_menu_token_starts_fresh_session(self):
        await self.h.register()
        await self.h.login()
        first = await self.h.wa("Hi")
        await self.h.wa("2")

        result = await self.h.wa("00")

        assert result.state == State.WELCOME
        assert result.session_id != first.session_id
        assert await self.h.sessions.get(first.session_id) is None


# ============================================================================
# Authentication gate
# ============================================================================

class TestAuthenticationGate:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_protected_menu_redirects_to_otp_on_whatsapp(self):
        await self.h.register()
        await self.h.wa("Hi")

        result = await self.h.wa("2")

        assert result.state == State.OTP_VERIFICATION
        assert "Please enter the 6-digit OTP" in result.response.text
        assert result.notices == (
            f"Your OTP for WhatsApp Banking is: {OTP_CODE}\n\nThis code will expire in 5 minutes.",
        )
        # OTP notice first, then the prompt
        assert self.h.sent_texts()[-2].startswith("Your OTP for WhatsApp Banking is:")

    @pytest.mark.asyncio
    async def test_correct_otp_logs_in_and_replays_request(self):
        await self.h.register()
        await self.h.wa("Hi")
        await self.h.wa("2")

        result = await self.h.wa(OTP_CODE)

        assert result.state == State.TRANSFER_INIT
        assert result.response.text.startswith(texts.LOGIN_SUCCESS)
        assert "Please select transfer type:" in result.response.text
        assert await self.h.logins.get_active(OWNER) is not None

        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert "pending_input" not in session.data
        assert "otp" not in session.data

    @pytest.mark.asyncio
    async def test_wrong_otp_stays_in_verification(self):
        await self.h.register()
        await self.h.wa("Hi")
        await self.h.wa("2")

        result = await self.h.wa("000111")

        assert result.state == State.OTP_VERIFICATION
        assert result.response.text.startswith("Invalid OTP.")
        assert await self.h.logins.get_active(OWNER) is None

    @pytest.mark.asyncio
    async def test_expired_otp_is_rejected(self):
        await self.h.register()
        await self.h.wa("Hi")
        await self.h.wa("2")
        self.h.clock.advance(301)

        result = await self.h.wa(OTP_CODE)

        assert result.state == State.OTP_VERIFICATION
        assert "expired" in result.response.text
        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session.state == State.OTP_VERIFICATION

    @pytest.mark.asyncio
    async def test_resend_issues_new_code(self):
        await self.h.register()
        await self.h.wa("Hi")
        await self.h.wa("2")
        self.h.clock.advance(301)

        resent = await self.h.wa("resend")
        assert len(resent.notices) == 1

        result = await self.h.wa(OTP_CODE)
        assert result.state == State.TRANSFER_INIT

    @pytest.mark.asyncio
    async def test_ussd_uses_pin_challenge(self):
        await self.h.register()
        await self.h.dial("")

        challenge = await self.h.dial("4")
        assert challenge.state == State.AUTHENTICATION
        assert "Please enter your PIN" in challenge.response.text

        result = await self.h.dial(f"4*{PIN}")
        assert result.state == State.SERVICES_INIT
        assert result.response.text.startswith(texts.LOGIN_SUCCESS)
        assert "Account Services Menu:" in result.response.text

    @pytest.mark.asyncio
    async def test_ussd_pin_attempt_limit_ends_session(self):
        await self.h.register()
        await self.h.dial("")
        await self.h.dial("4")

        first = await self.h.dial("4*1111")
        assert "2 attempts remaining" in first.response.text
        second = await self.h.dial("4*1111*2222")
        assert "1 attempt remaining" in second.response.text

        final = await self.h.dial("4*1111*2222*3333")
        assert final.response.text == "Maximum PIN attempts exceeded. Please try again later."
        assert final.response.end_session is True
        assert self.h.ussd.adapter.format(final.response)["type"] == "END"
        assert await self.h.sessions.find_active("ussd", OWNER) is None

    @pytest.mark.asyncio
    async def test_expired_login_redirects_again(self):
        await self.h.register()
        await self.h.login()
        await self.h.wa("Hi")
        await self.h.wa("2")

        self.h.clock.advance(self.h.settings.login_validity_seconds + 1)
        await self.h.wa("00")

        result = await self.h.wa("2")
        assert result.state == State.OTP_VERIFICATION


# ============================================================================
# Exit / expiry
# ============================================================================

class TestLifecycle:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_exit_token_ends_session_and_logs_out(self):
        await self.h.register()
        await self.h.login()
        start = await self.h.wa("Hi")
        await self.h.wa("2")

        result = await self.h.wa("000")

        assert result.response.text == texts.GOODBYE
        assert result.response.end_session is True
        assert result.state == State.END
        assert result.session_id == start.session_id
        assert await self.h.sessions.get(start.session_id) is None
        assert await self.h.sessions.find_active("whatsapp", OWNER) is None
        assert await self.h.logins.get_active(OWNER) is None

    @pytest.mark.asyncio
    async def test_exit_without_session_still_says_goodbye(self):
        result = await self.h.wa("000")
        assert result.response.text == texts.GOODBYE
        assert result.session_id is None

    @pytest.mark.asyncio
    async def test_idle_session_expires_then_restarts_at_welcome(self):
        first = await self.h.wa("Hi")
        self.h.clock.advance(self.h.settings.whatsapp_session_timeout_seconds + 1)

        expired = await self.h.wa("1")
        assert expired.response.text == texts.SESSION_EXPIRED
        assert expired.response.end_session is True

        again = await self.h.wa("Hi")
        assert again.state == State.WELCOME
        assert again.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_turn_without_changes_still_counts_as_activity(self):
        first = await self.h.wa("Hi")
        gap = self.h.settings.whatsapp_session_timeout_seconds // 2 + 1

        for _ in range(3):
            self.h.clock.advance(gap)
            result = await self.h.wa("9")
            assert result.response.text != texts.SESSION_EXPIRED
            assert result.session_id == first.session_id
            assert result.state == State.WELCOME

        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session.updated_at == self.h.clock.now
        assert session.version == 4

    @pytest.mark.asyncio
    async def test_ussd_store_ttl_lapse_starts_fresh(self):
        first = await self.h.dial("")
        self.h.clock.advance(self.h.settings.ussd_store_ttl_seconds + 1)

        result = await self.h.dial("1")
        assert result.state == State.WELCOME
        assert result.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_new_gateway_session_replaces_previous(self):
        first = await self.h.dial("", session_id="ATUid_A")
        second = await self.h.dial("", session_id="ATUid_B")

        assert second.session_id != first.session_id
        assert await self.h.sessions.get(first.session_id) is None

    @pytest.mark.asyncio
    async def test_cleanup_expires_idle_sessions_and_notifies_whatsapp(self):
        await self.h.wa("Hi")
        await self.h.dial("", phone="+254700000001")
        self.h.clock.advance(700)
        self.h.delivered.reset_mock()

        expired_wa = await self.h.whatsapp.cleanup_expired()
        expired_ussd = await self.h.ussd.cleanup_expired()

        assert expired_wa == 1
        assert expired_ussd == 1
        assert self.h.sent_texts() == [texts.SESSION_EXPIRED]

    @pytest.mark.asyncio
    async def test_end_conversation(self):
        result = await self.h.dial("")
        message = self.h.ussd.adapter.parse({"sessionId": "ATUid_1", "phoneNumber": OWNER, "text": ""})

        ended = await self.h.ussd.end_conversation(message)

        assert ended == result.session_id
        assert await self.h.ussd.end_conversation(message) is None


# ============================================================================
# Idempotency / concurrency
# ============================================================================

class TestIdempotency:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_redelivered_message_returns_recorded_response(self):
        await self.h.wa("Hi", message_id="wamid.A")
        first = await self.h.wa("2", message_id="wamid.B")
        session_before = await self.h.sessions.find_active("whatsapp", OWNER)

        second = await self.h.wa("2", message_id="wamid.B")

        assert second.duplicate is True
        assert second.response == first.response
        session_after = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session_after.version == session_before.version
        assert session_after.state == session_before.state

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_send_one_reply(self):
        results = await asyncio.gather(
            self.h.wa("Hi", message_id="wamid.SAME"),
            self.h.wa("Hi", message_id="wamid.SAME"),
        )

        assert sum(r.duplicate for r in results) == 1
        assert self.h.delivered.await_count == 1
        assert get_metrics_collector().get_counter("duplicate_messages_total", channel="whatsapp") == 1

    @pytest.mark.asyncio
    async def test_duplicate_skips_banking_side_effects(self):
        await self.h.register()
        await self.h.login()
        for text in ("Hi", "2", "1", "0987654321", "1000", "1"):
            await self.h.wa(text)

        await self.h.wa(PIN, message_id="wamid.PIN")
        await self.h.wa(PIN, message_id="wamid.PIN")

        assert len(self.h.banking.transfers) == 1

    @pytest.mark.asyncio
    async def test_same_ussd_step_resubmitted_is_duplicate(self):
        await self.h.dial("")
        first = await self.h.dial("2")
        again = await self.h.dial("2")

        assert again.duplicate is True
        assert again.response.text == first.response.text


# ============================================================================
# Failure handling
# ============================================================================

class TestFailures:

    def setup_method(self):
        self.h = Harness()

    async def _enter_balance_pin_step(self):
        await self.h.register()
        await self.h.login()
        for text in ("Hi", "4", "1"):
            await self.h.wa(text)

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_retry_and_keeps_state(self):
        await self._enter_balance_pin_step()
        self.h.banking.get_balance = AsyncMock(side_effect=RuntimeError("boom"))

        result = await self.h.wa(PIN)

        assert result.response.text == texts.generic_retry("00")
        assert result.state == State.BALANCE_INQUIRY
        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session.state == State.BALANCE_INQUIRY

    @pytest.mark.asyncio
    async def test_version_conflict_becomes_retry(self):
        await self.h.wa("Hi")
        with patch.object(
            self.h.sessions, "update", AsyncMock(side_effect=SessionConflict("sid", 1))
        ):
            result = await self.h.wa("2")

        assert result.response.text == texts.generic_retry("00")
        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert session.state == State.WELCOME

    async def _enter_transfer_pin_step(self):
        await self.h.register()
        await self.h.login()
        for text in ("Hi", "2", "1", "0987654321", "1000", "1"):
            await self.h.wa(text)

    def _conflict_on_write(self, number: int):
        real_update = self.h.sessions.update
        writes = []

        async def update(session_id, session_patch, expected_version=None):
            writes.append(session_patch)
            if len(writes) == number:
                raise SessionConflict(session_id, expected_version)
            return await real_update(session_id, session_patch, expected_version=expected_version)

        return patch.object(self.h.sessions, "update", AsyncMock(side_effect=update))

    @pytest.mark.asyncio
    async def test_conflict_before_transfer_moves_no_money(self):
        await self._enter_transfer_pin_step()

        with self._conflict_on_write(1):
            retry = await self.h.wa(PIN)

        assert retry.response.text == texts.generic_retry("00")
        assert self.h.banking.transfers == []

        done = await self.h.wa(PIN)
        assert done.response.text.startswith("Transfer successful!")
        assert len(self.h.banking.transfers) == 1

    @pytest.mark.asyncio
    async def test_conflict_after_transfer_never_repeats_it(self):
        await self._enter_transfer_pin_step()

        with self._conflict_on_write(2):
            done = await self.h.wa(PIN)

        assert done.response.text.startswith("Transfer successful!")
        assert len(self.h.banking.transfers) == 1

        again = await self.h.wa(PIN)
        assert again.response.text.startswith(UNCONFIRMED_ACTION)
        assert again.state == State.WELCOME
        assert len(self.h.banking.transfers) == 1

    @pytest.mark.asyncio
    async def test_failed_transfer_call_is_not_retried_on_next_input(self):
        await self._enter_transfer_pin_step()
        self.h.banking.transfer = AsyncMock(side_effect=RuntimeError("connection reset"))

        failed = await self.h.wa(PIN)
        again = await self.h.wa(PIN)

        assert failed.response.text == texts.generic_retry("00")
        assert again.response.text.startswith(UNCONFIRMED_ACTION)
        self.h.banking.transfer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_change_result(self):
        self.h.delivered.return_value = False
        result = await self.h.wa("Hi")

        assert result.state == State.WELCOME
        assert get_metrics_collector().get_counter("delivery_failures_total", channel="whatsapp") == 1

    @pytest.mark.asyncio
    async def test_malformed_ussd_payload_raises_before_any_session(self):
        from socialbank.core.engine.errors import MalformedInput

        with pytest.raises(MalformedInput):
            await self.h.ussd.process({"phoneNumber": OWNER, "text": ""})
        assert await self.h.sessions.find_active("ussd", OWNER) is None


# ============================================================================
# Full flows
# ============================================================================

class TestFlows:

    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_registration(self):
        steps = [
            ("Hi", State.WELCOME),
            ("1", State.REGISTRATION_INIT),
            ("1", State.ACCOUNT_REGISTRATION),
            (ACCOUNT, State.ACCOUNT_REGISTRATION),
            (PIN, State.ACCOUNT_REGISTRATION),
        ]
        for text, expected in steps:
            result = await self.h.wa(text)
            assert result.state == expected, text

        done = await self.h.wa(PIN)

        assert done.state == State.WELCOME
        assert done.response.text.startswith("Registration successful!")
        user = await self.h.users.get(OWNER)
        assert user.account_number == ACCOUNT
        assert await self.h.users.verify_pin(OWNER, PIN) is True
        session = await self.h.sessions.find_active("whatsapp", OWNER)
        assert "reg_pin" not in session.data

    @pytest.mark.asyncio
    async def test_internal_transfer(self):
        await self.h.register()
        await self.h.login()
        for text in ("Hi", "2", "1", "0987654321", "1000"):
            await self.h.wa(text)

        confirm = await self.h.wa("1")
        assert confirm.response.text == "Please enter your PIN to complete the transfer:"

        done = await self.h.wa(PIN)

        assert done.state == State.WELCOME
        assert done.response.text.startswith("Transfer successful!")
        [request] = self.h.banking.transfers
        assert request.amount == Decimal("1000.00")
        assert request.from_account == ACCOUNT
        assert request.to_account == "0987654321"

    @pytest.mark.asyncio
    async def test_balance_over_ussd(self):
        await self.h.register()
        await self.h.login()
        await self.h.dial("")
        await self.h.dial("4")
        await self.h.dial("4*1")

        result = await self.h.dial(f"4*1*{PIN}")

        assert "Available Balance: KES 25,000.00" in result.response.text
        assert "Actual Balance: KES 27,500.00" in result.response.text
        assert result.state == State.WELCOME
