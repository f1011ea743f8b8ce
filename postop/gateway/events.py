"""
Inbound events — the provider-neutral shape of what a webhook delivers.

A single webhook POST may carry any number of patient messages and
delivery-status callbacks.  Ingest parses the provider envelope into
these models; nothing downstream reads the raw JSON.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MessageKind(str, Enum):
    TEXT = "text"
    INTERACTIVE = "interactive"
    UNSUPPORTED = "unsupported"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InboundMessage(BaseModel):
    """One patient message.  ``message_id`` is the deduplication key."""

    message_id: str
    sender_phone: str
    kind: MessageKind = MessageKind.TEXT
    text: str = ""
    interactive_id: Optional[str] = None
    original_type: str = "text"
    received_at: datetime = Field(default_factory=_now)
    business_phone_number_id: Optional[str] = None

    @property
    def is_processable(self) -> bool:
        return self.kind != MessageKind.UNSUPPORTED and bool(self.text.strip())

    @classmethod
    def text_message(
        cls,
        *,
        message_id: str,
        sender_phone: str,
        text: str,
        received_at: datetime | None = None,
    ) -> InboundMessage:
        """Factory used by tests and tooling."""
        return cls(
            message_id=message_id,
            sender_phone=sender_phone,
            kind=MessageKind.TEXT,
            text=text,
            received_at=received_at or _now(),
        )


class DeliveryStatus(BaseModel):
    """Provider callback about a message we sent (sent/delivered/read/failed)."""

    message_id: str
    status: str
    recipient_phone: str = ""
    timestamp: Optional[datetime] = None
    errors: list[dict] = Field(default_factory=list)


class WebhookBatch(BaseModel):
    """Everything parsed out of one webhook delivery."""

    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[DeliveryStatus] = Field(default_factory=list)
    ignored: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.messages and not self.statuses
