"""
Tests for the WhatsApp channel — webhook parsing and outbound delivery.

Tests cover:
  - Text, interactive and button messages
  - Unsupported media and empty text → UNSUPPORTED
  - Delivery status callbacks, mixed batches, non-message changes
  - Business-number echoes and malformed entries ignored
  - Cloud API payloads, auth header and error handling (httpx mock transport)
  - ReplyDispatcher single retry and ordered dispatch_all
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from postop.gateway.channels import OutboundMessage, ReplyDispatcher
from postop.gateway.dispatchers.recording_dispatcher import RecordingMessenger
from postop.gateway.dispatchers.whatsapp_dispatcher import WhatsAppCloudMessenger
from postop.gateway.events import MessageKind
from postop.gateway.ingest.whatsapp_ingest import WhatsAppIngest

PHONE = "5583998663089"
NUMBER_ID = "109876543210"


def _envelope(messages=None, statuses=None, field="messages", obj="whatsapp_business_account"):
    value = {"metadata": {"phone_number_id": NUMBER_ID}}
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": obj,
        "entry": [{"id": "WABA", "changes": [{"field": field, "value": value}]}],
    }


def _text(message_id="wamid.1", body="sim", sender=PHONE):
    return {
        "id": message_id, "from": sender, "timestamp": "1700000000",
        "type": "text", "text": {"body": body},
    }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Ingest
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestWhatsAppIngest:

    def test_text_message(self):
        batch = WhatsAppIngest().parse(_envelope(messages=[_text(body="  Sim  ")]))
        assert len(batch.messages) == 1
        message = batch.messages[0]
        assert message.message_id == "wamid.1"
        assert message.sender_phone == PHONE
        assert message.kind == MessageKind.TEXT
        assert message.text == "Sim"
        assert message.received_at.year == 2023
        assert message.business_phone_number_id == NUMBER_ID

    def test_button_reply(self):
        raw = {
            "id": "wamid.2", "from": PHONE, "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Sim"}},
        }
        message = WhatsAppIngest().parse(_envelope(messages=[raw])).messages[0]
        assert message.kind == MessageKind.INTERACTIVE
        assert message.text == "Sim"
        assert message.interactive_id == "yes"

    def test_template_button(self):
        raw = {"id": "wamid.3", "from": PHONE, "type": "button", "button": {"text": "Começar"}}
        message = WhatsAppIngest().parse(_envelope(messages=[raw])).messages[0]
        assert message.kind == MessageKind.INTERACTIVE
        assert message.text == "Começar"

    @pytest.mark.parametrize("msg_type", ["audio", "image", "document", "sticker"])
    def test_media_is_unsupported(self, msg_type):
        raw = {"id": "wamid.4", "from": PHONE, "type": msg_type, msg_type: {"id": "media"}}
        message = WhatsAppIngest().parse(_envelope(messages=[raw])).messages[0]
        assert message.kind == MessageKind.UNSUPPORTED
        assert message.original_type == msg_type
        assert not message.is_processable

    def test_blank_text_is_unsupported(self):
        message = WhatsAppIngest().parse(_envelope(messages=[_text(body="   ")])).messages[0]
        assert message.kind == MessageKind.UNSUPPORTED

    def test_statuses_parsed(self):
        batch = WhatsAppIngest().parse(_envelope(statuses=[
            {"id": "wamid.out", "status": "delivered", "recipient_id": PHONE, "timestamp": "1700000000"},
            {"id": "wamid.out2", "status": "failed", "recipient_id": PHONE,
             "errors": [{"code": 131047}]},
        ]))
        assert batch.messages == []
        assert [s.status for s in batch.statuses] == ["delivered", "failed"]
        assert batch.statuses[1].errors == [{"code": 131047}]

    def test_mixed_batch(self):
        batch = WhatsAppIngest().parse(_envelope(
            messages=[_text("wamid.a"), _text("wamid.b", sender="5511987654321")],
            statuses=[{"id": "wamid.out", "status": "read"}],
        ))
        assert [m.message_id for m in batch.messages] == ["wamid.a", "wamid.b"]
        assert len(batch.statuses) == 1

    def test_other_object_ignored(self):
        batch = WhatsAppIngest().parse(_envelope(messages=[_text()], obj="page"))
        assert batch.is_empty

    def test_non_message_change_counted_as_ignored(self):
        batch = WhatsAppIngest().parse(_envelope(messages=[_text()], field="account_update"))
        assert batch.messages == []
        assert batch.ignored == 1

    def test_missing_id_or_sender_ignored(self):
        batch = WhatsAppIngest().parse(_envelope(messages=[
            {"from": PHONE, "type": "text", "text": {"body": "oi"}},
            {"id": "wamid.x", "type": "text", "text": {"body": "oi"}},
        ]))
        assert batch.messages == []
        assert batch.ignored == 2

    def test_business_echo_ignored(self):
        batch = WhatsAppIngest().parse(_envelope(messages=[_text(sender=NUMBER_ID)]))
        assert batch.messages == []
        assert batch.ignored == 1

    def test_bad_timestamp_defaults_to_now(self):
        raw = _text()
        raw["timestamp"] = "not-a-number"
        message = WhatsAppIngest().parse(_envelope(messages=[raw])).messages[0]
        assert message.received_at.year >= 2024


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Cloud API messenger
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _messenger(handler, **kwargs) -> tuple[WhatsAppCloudMessenger, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    defaults = dict(access_token="token-abc", phone_number_id=NUMBER_ID, api_version="v21.0")
    defaults.update(kwargs)
    return WhatsAppCloudMessenger(client=client, **defaults), client


class TestWhatsAppCloudMessenger:

    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.sent"}]})

        messenger, client = _messenger(handler)
        result = await messenger.send(PHONE, "Olá Maria")
        await client.aclose()

        assert result.success is True
        assert result.provider_message_id == "wamid.sent"
        request = seen[0]
        assert str(request.url) == f"https://graph.facebook.com/v21.0/{NUMBER_ID}/messages"
        assert request.headers["Authorization"] == "Bearer token-abc"
        body = json.loads(request.content)
        assert body["to"] == PHONE
        assert body["type"] == "text"
        assert body["text"]["body"] == "Olá Maria"

    @pytest.mark.asyncio
    async def test_mark_read_payload(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        messenger, client = _messenger(handler)
        result = await messenger.mark_read("wamid.in")
        await client.aclose()

        assert result.success is True
        assert seen == [{"messaging_product": "whatsapp", "status": "read", "message_id": "wamid.in"}]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        messenger, client = _messenger(lambda request: httpx.Response(401, text="bad token"))
        result = await messenger.send(PHONE, "oi")
        await client.aclose()

        assert result.success is False
        assert result.error == "HTTP 401"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        messenger, client = _messenger(handler)
        result = await messenger.send(PHONE, "oi")
        await client.aclose()

        assert result.success is False
        assert "unreachable" in result.error

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.delenv("WHATSAPP_ACCESS_TOKEN", raising=False)
        monkeypatch.delenv("WHATSAPP_PHONE_NUMBER_ID", raising=False)
        messenger = WhatsAppCloudMessenger()

        assert messenger.configured is False
        result = await messenger.send(PHONE, "oi")
        assert result.success is False
        assert "not configured" in result.error

    @pytest.mark.asyncio
    async def test_missing_recipient(self):
        messenger, client = _messenger(lambda request: httpx.Response(200, json={}))
        result = await messenger.send("", "oi")
        await client.aclose()
        assert result.success is False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Reply dispatcher
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestReplyDispatcher:

    @pytest.mark.asyncio
    async def test_retries_once(self):
        messenger = RecordingMessenger()
        messenger.fail_next(1)
        dispatcher = ReplyDispatcher(messenger)

        with patch("postop.gateway.channels.asyncio.sleep", new=AsyncMock()):
            result = await dispatcher.dispatch(OutboundMessage(phone=PHONE, text="oi"))

        assert result.success is True
        assert messenger.messages_to(PHONE) == ["oi"]

    @pytest.mark.asyncio
    async def test_gives_up_after_retry(self):
        messenger = RecordingMessenger()
        messenger.fail_next(2)
        dispatcher = ReplyDispatcher(messenger)

        with patch("postop.gateway.channels.asyncio.sleep", new=AsyncMock()):
            result = await dispatcher.dispatch(OutboundMessage(phone=PHONE, text="oi"))

        assert result.success is False
        assert messenger.total_sent == 0

    @pytest.mark.asyncio
    async def test_messenger_exception_becomes_failure(self):
        messenger = RecordingMessenger()
        messenger.send = AsyncMock(side_effect=RuntimeError("socket closed"))
        dispatcher = ReplyDispatcher(messenger)

        with patch("postop.gateway.channels.asyncio.sleep", new=AsyncMock()):
            result = await dispatcher.dispatch(OutboundMessage(phone=PHONE, text="oi"))

        assert result.success is False
        assert result.error == "socket closed"
        assert messenger.send.await_count == 2

    @pytest.mark.asyncio
    async def test_dispatch_all_keeps_order(self):
        messenger = RecordingMessenger()
        dispatcher = ReplyDispatcher(messenger)

        results = await dispatcher.dispatch_all([
            OutboundMessage(phone=PHONE, text="primeira"),
            OutboundMessage(phone=PHONE, text="segunda"),
        ])

        assert all(r.success for r in results)
        assert messenger.messages_to(PHONE) == ["primeira", "segunda"]

    @pytest.mark.asyncio
    async def test_mark_read_never_raises(self):
        messenger = RecordingMessenger()
        messenger.mark_read = AsyncMock(side_effect=RuntimeError("down"))
        await ReplyDispatcher(messenger).mark_read("wamid.1")
