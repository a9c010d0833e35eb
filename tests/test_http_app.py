# tests/test_http_app.py
"""HTTP-level tests: USSD gateway endpoints, probes and protected operational endpoints."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import OWNER
from socialbank.config import settings
from socialbank.infra.metrics import get_metrics_collector
from socialbank.transport.http_app import app

ADMIN_TOKEN = "Zq8vN3xK7mW2pR5tY9bC4dF6gH1jL0sA"
METRICS_TOKEN = "Mt4kP9wQ2zX7cV5bN8mL3jH6gF1dS0aE"


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


def _dial(client, text: str = "", session_id: str = "ATUid_http", phone: str = "+" + OWNER):
    return client.post(
        "/ussd/session",
        data={"sessionId": session_id, "phoneNumber": phone, "serviceCode": "*123#", "text": text},
    )


# ============================================================================
# USSD gateway
# ============================================================================

class TestUSSDEndpoint:

    def test_first_dial_opens_menu(self, client):
        response = _dial(client)

        assert response.status_code == 200
        body = response.json()
        assert body["type"] == "CON"
        assert "1. Register" in body["message"]

    def test_json_body_is_accepted(self, client):
        response = client.post(
            "/ussd/session",
            json={"sessionId": "ATUid_json", "phoneNumber": OWNER, "text": ""},
        )
        assert response.status_code == 200
        assert response.json()["type"] == "CON"

    def test_cumulative_text_selects_last_segment(self, client):
        _dial(client)
        response = _dial(client, "2")

        assert response.status_code == 200
        assert response.json()["message"].startswith("Welcome to Social Banking Help!")

    def test_exit_ends_gateway_session(self, client):
        _dial(client)
        response = _dial(client, "000")

        assert response.json()["type"] == "END"

    def test_missing_session_id_is_rejected(self, client):
        response = client.post("/ussd/session", data={"phoneNumber": OWNER, "text": ""})
        assert response.status_code == 400
        assert response.json()["error"] == "Malformed USSD request"

    def test_resubmitted_step_returns_same_reply(self, client):
        _dial(client)
        first = _dial(client, "1")
        again = _dial(client, "1")

        assert again.json() == first.json()

    def test_session_view(self, client):
        _dial(client, session_id="ATUid_view")

        response = client.get("/ussd/session/ATUid_view", params={"phoneNumber": "+" + OWNER})

        assert response.status_code == 200
        view = response.json()
        assert view["owner"] == OWNER
        assert view["channel"] == "ussd"
        assert view["state"] == "WELCOME"
        assert view["conversation_id"] == "ATUid_view"

    def test_session_view_unknown(self, client):
        response = client.get("/ussd/session/nope", params={"phoneNumber": OWNER})
        assert response.status_code == 404

    def test_session_view_requires_phone_number(self, client):
        assert client.get("/ussd/session/ATUid_view").status_code == 422

    def test_end_notification(self, client):
        _dial(client, session_id="ATUid_end")

        response = client.post("/ussd/session/end", data={"sessionId": "ATUid_end", "phoneNumber": OWNER})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "ended": True}
        assert client.get("/ussd/session/ATUid_end", params={"phoneNumber": OWNER}).status_code == 404

    def test_end_notification_requires_phone(self, client):
        response = client.post("/ussd/session/end", data={"sessionId": "ATUid_end"})
        assert response.status_code == 400


# ============================================================================
# Probes
# ============================================================================

class TestProbes:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_ready_with_memory_storage(self, client):
        assert client.get("/ready").json() == {"status": "healthy"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_is_generated(self, client):
        assert client.get("/health").headers.get("X-Request-ID")


# ============================================================================
# Admin and monitoring
# ============================================================================

class TestAdminEndpoints:

    def test_cleanup_disabled_without_token(self, client):
        with patch.object(settings, "admin_token", None):
            response = client.post("/admin/cleanup")
        assert response.status_code == 503

    def test_cleanup_requires_bearer(self, client):
        with patch.object(settings, "admin_token", ADMIN_TOKEN):
            missing = client.post("/admin/cleanup")
            wrong = client.post("/admin/cleanup", headers={"Authorization": "Bearer wrong-token"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert wrong.json() == {"error": "Invalid credentials"}

    def test_cleanup(self, client):
        _dial(client, session_id="ATUid_cleanup")

        with patch.object(settings, "admin_token", ADMIN_TOKEN):
            response = client.post("/admin/cleanup", headers={"Authorization": f"Bearer {ADMIN_TOKEN}"})

        assert response.status_code == 200
        body = response.json()
        assert set(body["sessions_expired"]) == {"whatsapp", "ussd"}
        assert body["processed_messages_deleted"] == 0

    def test_metrics_reset(self, client):
        get_metrics_collector().inc_counter("messages_processed_total")
        with patch.object(settings, "admin_token", ADMIN_TOKEN):
            response = client.post("/admin/metrics/reset", headers={"Authorization": f"Bearer {ADMIN_TOKEN}"})

        assert response.status_code == 200
        assert get_metrics_collector().get_counter("messages_processed_total") == 0


class TestMonitoringEndpoints:

    def test_metrics_hidden_without_token(self, client):
        with patch.object(settings, "metrics_token", None):
            assert client.get("/metrics").status_code == 404

    def test_metrics(self, client):
        _dial(client, session_id="ATUid_metrics")

        with patch.object(settings, "metrics_token", METRICS_TOKEN):
            response = client.get("/metrics", headers={"Authorization": f"Bearer {METRICS_TOKEN}"})

        assert response.status_code == 200
        counters = response.json()["counters"]
        assert any(key.startswith("messages_processed_total") for key in counters)

    def test_detailed_health(self, client):
        with patch.object(settings, "metrics_token", METRICS_TOKEN):
            response = client.get("/health/detailed", headers={"Authorization": f"Bearer {METRICS_TOKEN}"})

        assert response.status_code == 200
        assert response.json()["storage"] == "memory"
