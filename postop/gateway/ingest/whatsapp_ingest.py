"""
WhatsApp Ingest — converts WhatsApp Cloud API webhook bodies into
InboundMessages and DeliveryStatus callbacks.

Expected webhook body:
{
  "object": "whatsapp_business_account",
  "entry": [{
    "id": "WABA-ID",
    "changes": [{
      "field": "messages",
      "value": {
        "metadata": {"phone_number_id": "1234", "display_phone_number": "..."},
        "messages": [
          {"id": "wamid...", "from": "5583998663089", "timestamp": "1700000000",
           "type": "text", "text": {"body": "sim"}},
          {"id": "wamid...", "from": "...", "type": "interactive",
           "interactive": {"type": "button_reply",
                           "button_reply": {"id": "yes", "title": "Sim"}}}
        ],
        "statuses": [{"id": "wamid...", "status": "delivered",
                      "recipient_id": "...", "timestamp": "1700000000"}]
      }
    }]
  }]
}
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from postop.gateway.channels import ChannelIngest
from postop.gateway.events import (
    DeliveryStatus,
    InboundMessage,
    MessageKind,
    WebhookBatch,
)

logger = logging.getLogger("gateway.ingest.whatsapp")

WHATSAPP_OBJECT = "whatsapp_business_account"


class WhatsAppIngest(ChannelIngest):
    """Parses the Meta webhook envelope.  Never raises on odd payloads."""

    channel_name = "whatsapp"

    def __init__(self, business_phone_number_id: str = "") -> None:
        self._own_number_id = business_phone_number_id

    def parse(self, raw_input: dict[str, Any]) -> WebhookBatch:
        batch = WebhookBatch()
        if raw_input.get("object") != WHATSAPP_OBJECT:
            logger.info("Ignoring webhook for object %r", raw_input.get("object"))
            return batch

        for entry in raw_input.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    batch.ignored += 1
                    continue
                value = change.get("value") or {}
                metadata = value.get("metadata") or {}
                number_id = str(metadata.get("phone_number_id") or "")

                for raw_msg in value.get("messages") or []:
                    message = self._parse_message(raw_msg, number_id)
                    if message is None:
                        batch.ignored += 1
                        continue
                    batch.messages.append(message)

                for raw_status in value.get("statuses") or []:
                    status = self._parse_status(raw_status)
                    if status is not None:
                        batch.statuses.append(status)

        return batch

    # ── Internal ──

    def _parse_message(
        self, raw: dict[str, Any], number_id: str
    ) -> InboundMessage | None:
        message_id = str(raw.get("id") or "")
        sender = str(raw.get("from") or "")
        if not message_id or not sender:
            logger.warning("Dropping message without id/from: %s", raw)
            return None

        # Echoes of our own outbound messages
        own_ids = {i for i in (number_id, self._own_number_id) if i}
        if sender in own_ids:
            logger.debug("Skipping message %s sent by the business number", message_id)
            return None

        msg_type = str(raw.get("type") or "")
        kind = MessageKind.UNSUPPORTED
        text = ""
        interactive_id = None

        if msg_type == "text":
            kind = MessageKind.TEXT
            text = str((raw.get("text") or {}).get("body") or "")
        elif msg_type == "interactive":
            interactive = raw.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            if reply:
                kind = MessageKind.INTERACTIVE
                text = str(reply.get("title") or "")
                interactive_id = reply.get("id")
        elif msg_type == "button":
            # Quick-reply buttons on template messages
            kind = MessageKind.INTERACTIVE
            text = str((raw.get("button") or {}).get("text") or "")

        if kind != MessageKind.UNSUPPORTED and not text.strip():
            kind = MessageKind.UNSUPPORTED

        return InboundMessage(
            message_id=message_id,
            sender_phone=sender,
            kind=kind,
            text=text.strip(),
            interactive_id=interactive_id,
            original_type=msg_type or "unknown",
            received_at=_parse_timestamp(raw.get("timestamp")),
            business_phone_number_id=number_id or None,
        )

    @staticmethod
    def _parse_status(raw: dict[str, Any]) -> DeliveryStatus | None:
        message_id = raw.get("id")
        status = raw.get("status")
        if not message_id or not status:
            return None
        return DeliveryStatus(
            message_id=str(message_id),
            status=str(status),
            recipient_phone=str(raw.get("recipient_id") or ""),
            timestamp=_parse_timestamp(raw.get("timestamp")),
            errors=list(raw.get("errors") or []),
        )


def _parse_timestamp(value: Any) -> datetime:
    """WhatsApp sends epoch seconds as a string."""
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)
