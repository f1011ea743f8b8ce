"""
Tests for the WhatsApp webhook HTTP surface.

Tests cover:
  - GET subscription handshake (echo challenge / 403 on token mismatch)
  - POST signature verification (401) before any processing
  - Malformed bodies (400)
  - Processed, duplicate, unregistered and status-only deliveries (200)
  - Internal failure → 500 so the provider retries, DLQ entry recorded
  - Per-source rate limit (429 + Retry-After), checked before the signature
  - Status / health / metrics / DLQ endpoints
  - Startup refuses to run without webhook credentials
"""

import hashlib
import hmac
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from postop.gateway import setup
from postop.gateway.errors import ConfigurationError
from postop.routers import webhook
from postop.settings import Settings

APP_SECRET = "app-secret"
MARIA_PHONE = "5583998663089"
JOAO_PHONE = "5511987654321"
DOCTOR_PHONE = "5583900000001"

WEBHOOK = "/api/whatsapp/webhook"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _sign(body: bytes, secret: str = APP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _text(message_id: str, text: str, sender: str = MARIA_PHONE) -> dict:
    return {
        "id": message_id, "from": sender, "timestamp": "1700000000",
        "type": "text", "text": {"body": text},
    }


def _body(*messages: dict, statuses: list | None = None) -> bytes:
    value: dict = {"metadata": {"phone_number_id": "109876543210"}}
    if messages:
        value["messages"] = list(messages)
    if statuses:
        value["statuses"] = statuses
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }).encode()


def _post(client: TestClient, body: bytes, signature: str | None = "auto"):
    headers = {"Content-Type": "application/json"}
    if signature == "auto":
        headers["X-Hub-Signature-256"] = _sign(body)
    elif signature is not None:
        headers["X-Hub-Signature-256"] = signature
    return client.post(WEBHOOK, content=body, headers=headers)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Handshake
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHandshake:

    def test_echoes_challenge(self, api_client):
        resp = api_client.get(WEBHOOK, params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token(self, api_client):
        resp = api_client.get(WEBHOOK, params={
            "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1",
        })
        assert resp.status_code == 403

    def test_wrong_mode(self, api_client):
        resp = api_client.get(WEBHOOK, params={
            "hub.mode": "unsubscribe", "hub.verify_token": "verify-me", "hub.challenge": "1",
        })
        assert resp.status_code == 403


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Authentication and parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSignature:

    def test_missing_signature(self, api_client):
        resp = _post(api_client, _body(_text("s-1", "oi")), signature=None)
        assert resp.status_code == 401
        assert setup.get_messenger().total_sent == 0

    def test_invalid_signature(self, api_client):
        body = _body(_text("s-2", "oi"))
        resp = _post(api_client, body, signature=_sign(body, secret="someone-else"))
        assert resp.status_code == 401
        assert setup.get_store().get_processed("s-2") is None

    def test_tampered_body(self, api_client):
        body = _body(_text("s-3", "oi"))
        signature = _sign(body)
        tampered = body.replace(b"oi", b"ok")
        resp = _post(api_client, tampered, signature=signature)
        assert resp.status_code == 401

    def test_invalid_json(self, api_client):
        resp = _post(api_client, b"{not json")
        assert resp.status_code == 400

    def test_non_object_json(self, api_client):
        resp = _post(api_client, b"[1, 2, 3]")
        assert resp.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Deliveries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDeliveries:

    def test_message_processed(self, api_client):
        resp = _post(api_client, _body(_text("wamid.1", "oi")))

        assert resp.status_code == 200
        data = resp.json()
        assert data["received"] == 1
        assert data["processed"] == 1
        assert data["results"][0]["outcome"] == "confirmation_requested"

        replies = setup.get_messenger().messages_to(MARIA_PHONE)
        assert len(replies) == 1
        assert "D+7" in replies[0]

    def test_duplicate_delivery(self, api_client):
        body = _body(_text("wamid.dup", "oi"))
        _post(api_client, body)

        resp = _post(api_client, body)

        assert resp.status_code == 200
        assert resp.json()["duplicates"] == 1
        assert resp.json()["processed"] == 0
        assert len(setup.get_messenger().messages_to(MARIA_PHONE)) == 1

    def test_batch_with_two_patients(self, api_client):
        resp = _post(api_client, _body(
            _text("wamid.m", "oi"),
            _text("wamid.j", "oi", sender=JOAO_PHONE),
        ))
        assert resp.status_code == 200
        assert resp.json()["processed"] == 2
        assert len(setup.get_messenger().messages_to(JOAO_PHONE)) == 1

    def test_unregistered_sender(self, api_client):
        resp = _post(api_client, _body(_text("wamid.u", "oi", sender="5521911112222")))
        assert resp.status_code == 200
        assert resp.json()["results"][0]["outcome"] == "patient_not_found"

    def test_status_only_delivery(self, api_client):
        resp = _post(api_client, _body(statuses=[
            {"id": "wamid.out", "status": "delivered", "recipient_id": MARIA_PHONE},
        ]))
        assert resp.status_code == 200
        assert resp.json()["statuses"] == 1
        assert resp.json()["received"] == 0

    def test_audio_gets_text_request(self, api_client):
        audio = {"id": "wamid.a", "from": MARIA_PHONE, "type": "audio", "audio": {"id": "media"}}
        resp = _post(api_client, _body(audio))
        assert resp.status_code == 200
        assert resp.json()["results"][0]["outcome"] == "unsupported_message"

    def test_critical_questionnaire_alerts_physician(self, api_client):
        texts = ["oi", "sim", "9", "sim", "8", "muito, está sangrando bastante", "não", "sim", "não"]
        for i, text in enumerate(texts):
            resp = _post(api_client, _body(_text(f"wamid.q{i}", text)))
            assert resp.status_code == 200

        assert resp.json()["results"][0]["final_level"] == "critical"
        alerts = setup.get_messenger().messages_to(DOCTOR_PHONE)
        assert len(alerts) == 1
        assert "Maria Souza" in alerts[0]

    def test_internal_failure_returns_500(self, api_client, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store offline")

        monkeypatch.setattr(setup.get_store(), "get_active_follow_up", broken)

        resp = _post(api_client, _body(_text("wamid.fail", "oi")))

        assert resp.status_code == 500
        data = resp.json()
        assert data["status"] == "error"
        assert data["results"][0]["outcome"] == "failed"
        assert setup.get_store().get_processed("wamid.fail") is None

        dlq = api_client.get("/api/whatsapp/dlq").json()
        assert dlq["count"] == 1
        assert dlq["entries"][0]["message_id"] == "wamid.fail"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Rate limiting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRateLimit:

    @pytest.fixture
    def api_settings(self):
        return Settings(
            verify_token="verify-me",
            app_secret=APP_SECRET,
            rate_limit_max_requests=2,
            rate_limit_window_seconds=60,
            alert_outbox_interval_seconds=3600,
        )

    def test_limit_exceeded(self, api_client):
        for i in range(2):
            assert _post(api_client, _body(_text(f"rl-{i}", "oi"))).status_code == 200

        resp = _post(api_client, _body(_text("rl-2", "oi")))

        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        assert setup.get_store().get_processed("rl-2") is None

    def test_checked_before_signature(self, api_client):
        for _ in range(2):
            assert _post(api_client, b"{}", signature=None).status_code == 401
        assert _post(api_client, b"{}", signature=None).status_code == 429

    def test_limit_is_per_source(self, api_client):
        for _ in range(2):
            _post(api_client, _body(statuses=[{"id": "x", "status": "read"}]))
        body = _body(statuses=[{"id": "x", "status": "read"}])
        resp = api_client.post(WEBHOOK, content=body, headers={
            "X-Hub-Signature-256": _sign(body), "X-Forwarded-For": "203.0.113.9",
        })
        assert resp.status_code == 200


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Operations endpoints and startup
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestOperations:

    def test_status(self, api_client):
        _post(api_client, _body(_text("op-1", "oi")))
        data = api_client.get("/api/whatsapp/status").json()
        assert data["status"] == "ok"
        assert data["channel"] == "recording"
        assert data["active_queues"] == 1
        assert data["outbox_running"] is True
        assert data["rate_limit"]["max_requests"] == 1000

    def test_health_and_metrics(self, api_client):
        _post(api_client, _body(_text("op-2", "oi")))

        health = api_client.get("/api/whatsapp/health").json()
        assert health["healthy"] is True
        assert health["messages_processed"] == 1

        metrics = api_client.get("/api/whatsapp/metrics").json()
        assert metrics["messages_processed"] == 1
        assert metrics["dlq_size"] == 0

    def test_service_health(self, api_client):
        assert api_client.get("/health").json()["service"] == "postop-followup"
        assert api_client.get("/").status_code == 200

    def test_not_initialized(self, monkeypatch):
        for name in ("_settings", "_gateway", "_queue_manager", "_ingest", "_rate_limiter"):
            monkeypatch.setattr(setup, name, None)
        app = FastAPI()
        app.include_router(webhook.router)
        client = TestClient(app)

        assert client.post(WEBHOOK, content=b"{}").status_code == 503
        assert client.get(WEBHOOK, params={"hub.mode": "subscribe"}).status_code == 503
        assert client.get("/api/whatsapp/status").json()["status"] == "not_initialized"
        assert client.get("/api/whatsapp/health").json()["healthy"] is False

    @pytest.mark.asyncio
    async def test_startup_requires_credentials(self):
        with pytest.raises(ConfigurationError, match="WHATSAPP_APP_SECRET"):
            await setup.initialize_gateway(Settings(verify_token="verify-me"))
