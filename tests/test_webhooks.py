# tests/test_webhooks.py
"""Tests for the WhatsApp webhook: signature validation, verification handshake and inbound flow."""
from __future__ import annotations

import hashlib
import hmac as hmac_mod
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import OWNER, whatsapp_payload
from socialbank.config import settings
from socialbank.infra.metrics import get_metrics_collector
from socialbank.transport.http_app import app
from socialbank.transport.whatsapp_webhook import verify_signature, whatsapp_webhook_verify


# ============================================================================
# Signature verification
# ============================================================================

class TestSignatureVerification:

    def test_valid_signature(self):
        body = b'{"test": "data"}'
        sig = hmac_mod.new(b"test-secret", body, hashlib.sha256).hexdigest()
        assert verify_signature(f"sha256={sig}", body, "test-secret") is True

    def test_invalid_signature(self):
        assert verify_signature("sha256=" + "0" * 64, b'{"test": "data"}', "test-secret") is False

    def test_missing_signature_header(self):
        assert verify_signature("", b"body", "test-secret") is False

    def test_wrong_format(self):
        assert verify_signature("md5=abc123", b"body", "test-secret") is False

    def test_no_secret_configured_skips(self):
        assert verify_signature("", b"body", None) is True


# ============================================================================
# GET handshake
# ============================================================================

class TestWebhookVerify:

    def _request(self, **params) -> MagicMock:
        request = MagicMock()
        request.query_params = params
        return request

    @pytest.mark.asyncio
    @patch("socialbank.transport.whatsapp_webhook.settings")
    async def test_successful_verification(self, mock_settings):
        mock_settings.meta_webhook_verify_token = "my-verify-token"
        request = self._request(**{
            "hub.mode": "subscribe",
            "hub.verify_token": "my-verify-token",
            "hub.challenge": "challenge_123",
        })

        response = await whatsapp_webhook_verify(request)

        assert response.status_code == 200
        assert response.body == b"challenge_123"

    @pytest.mark.asyncio
    @patch("socialbank.transport.whatsapp_webhook.settings")
    async def test_wrong_token(self, mock_settings):
        mock_settings.meta_webhook_verify_token = "my-verify-token"
        request = self._request(**{"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "c"})

        with pytest.raises(HTTPException) as exc_info:
            await whatsapp_webhook_verify(request)

        assert exc_info.value.status_code == 403
        assert get_metrics_collector().get_counter(
            "webhook_validation_failures_total", provider="whatsapp"
        ) == 1

    @pytest.mark.asyncio
    @patch("socialbank.transport.whatsapp_webhook.settings")
    async def test_unconfigured_token_rejects(self, mock_settings):
        mock_settings.meta_webhook_verify_token = None
        request = self._request(**{"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "c"})

        with pytest.raises(HTTPException):
            await whatsapp_webhook_verify(request)


# ============================================================================
# POST through the application
# ============================================================================

class TestWebhookEndpoint:

    @pytest.fixture
    def client(self):
        with TestClient(app) as client:
            self.deliver = AsyncMock(return_value=True)
            app.state.engines["whatsapp"].adapter.deliver = self.deliver
            yield client

    def test_message_is_processed_and_reply_delivered(self, client):
        response = client.post("/webhooks/whatsapp", json=whatsapp_payload("Hi", message_id="wamid.http.1"))

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        self.deliver.assert_awaited_once()
        recipient, bot_response, options = self.deliver.await_args.args
        assert recipient == OWNER
        assert "Welcome to Social Banking" in bot_response.text
        assert options == {"business_phone_id": "PNID_1", "reply_to": "wamid.http.1"}

    def test_redelivery_is_not_answered_twice(self, client):
        payload = whatsapp_payload("Hi", message_id="wamid.http.2")
        client.post("/webhooks/whatsapp", json=payload)
        client.post("/webhooks/whatsapp", json=payload)

        assert self.deliver.await_count == 1
        assert get_metrics_collector().get_counter("duplicate_messages_total", channel="whatsapp") == 1

    def test_redelivery_is_marked_read_once(self, client):
        payload = whatsapp_payload("Hi", message_id="wamid.http.read")
        with patch("socialbank.transport.whatsapp_sender.mark_as_read", new_callable=AsyncMock) as mark_read, \
                patch.object(settings, "whatsapp_mark_read", True), \
                patch.object(settings, "meta_access_token", "token"):
            client.post("/webhooks/whatsapp", json=payload)
            client.post("/webhooks/whatsapp", json=payload)

        mark_read.assert_awaited_once_with("wamid.http.read", phone_number_id="PNID_1")
        assert self.deliver.await_count == 1

    def test_status_callback_acknowledged(self, client):
        payload = {
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.x", "status": "delivered"}]}}]}],
        }
        response = client.post("/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        self.deliver.assert_not_awaited()

    def test_invalid_json_acknowledged(self, client):
        response = client.post(
            "/webhooks/whatsapp",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200
        self.deliver.assert_not_awaited()

    def test_malformed_message_acknowledged(self, client):
        payload = whatsapp_payload("Hi")
        del payload["entry"][0]["changes"][0]["value"]["messages"][0]["from"]

        response = client.post("/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        self.deliver.assert_not_awaited()

    def test_bad_signature_rejected(self, client):
        body = json.dumps(whatsapp_payload("Hi")).encode()
        with patch.object(settings, "require_webhook_validation", True), \
                patch.object(settings, "meta_app_secret", "app-secret"):
            response = client.post(
                "/webhooks/whatsapp",
                content=body,
                headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=" + "0" * 64},
            )

        assert response.status_code == 403
        self.deliver.assert_not_awaited()

    def test_good_signature_accepted(self, client):
        body = json.dumps(whatsapp_payload("Hi", message_id="wamid.http.3")).encode()
        sig = hmac_mod.new(b"app-secret", body, hashlib.sha256).hexdigest()
        with patch.object(settings, "require_webhook_validation", True), \
                patch.object(settings, "meta_app_secret", "app-secret"):
            response = client.post(
                "/webhooks/whatsapp",
                content=body,
                headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={sig}"},
            )

        assert response.status_code == 200
        self.deliver.assert_awaited_once()
