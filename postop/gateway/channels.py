"""
Channel Abstractions — inbound parsing and outbound delivery.

These ABCs keep the Gateway independent of the messaging provider.
Replacing WhatsApp Cloud API with another transport means:
  1. Implement a Messenger subclass
  2. Implement a ChannelIngest subclass
  3. Point the webhook router at the new ingest
No changes to the Gateway, conversation manager, rules, or store.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from postop.gateway.events import WebhookBatch

logger = logging.getLogger("gateway.channels")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  OUTBOUND — delivering replies and alerts
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class OutboundMessage(BaseModel):
    """A message the pipeline wants to send to one phone."""

    phone: str
    text: str
    patient_id: Optional[str] = None
    kind: str = "reply"  # "reply", "question", "alert", "fallback"
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Outcome of a single delivery attempt."""

    success: bool
    channel: str
    recipient: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class Messenger(ABC):
    """Abstract outbound transport."""

    channel_name: str = ""

    @abstractmethod
    async def send(self, phone: str, text: str) -> DeliveryResult:
        """Deliver one text message.  Must not raise — return DeliveryResult."""

    @abstractmethod
    async def mark_read(self, message_id: str) -> DeliveryResult:
        """Acknowledge an inbound message as read.  Must not raise."""


class ReplyDispatcher:
    """
    Sends patient-facing messages through a Messenger with a single retry.

    Physician alerts do not go through here; they need the longer retry
    and outbox policy in ``postop.gateway.alerts``.
    """

    RETRY_DELAY_SECONDS = 0.5

    def __init__(self, messenger: Messenger) -> None:
        self._messenger = messenger

    @property
    def messenger(self) -> Messenger:
        return self._messenger

    @property
    def channel_name(self) -> str:
        return self._messenger.channel_name

    async def dispatch(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver one message (with single retry)."""
        for attempt in range(2):
            try:
                result = await self._messenger.send(message.phone, message.text)
                if result.success or attempt == 1:
                    return result
                logger.warning(
                    "Delivery to %s failed (attempt 1): %s — retrying",
                    message.phone, result.error,
                )
                await asyncio.sleep(self.RETRY_DELAY_SECONDS)
            except Exception as exc:
                if attempt == 0:
                    logger.warning(
                        "Messenger '%s' error (attempt 1): %s — retrying",
                        self.channel_name, exc,
                    )
                    await asyncio.sleep(self.RETRY_DELAY_SECONDS)
                else:
                    logger.error(
                        "Messenger '%s' error after retry: %s",
                        self.channel_name, exc,
                    )
                    return DeliveryResult(
                        success=False,
                        channel=self.channel_name,
                        recipient=message.phone,
                        error=str(exc),
                    )
        return DeliveryResult(
            success=False,
            channel=self.channel_name,
            recipient=message.phone,
            error="Dispatch failed after retry",
        )

    async def dispatch_all(
        self, messages: list[OutboundMessage]
    ) -> list[DeliveryResult]:
        """Deliver messages in order; a failure does not stop the rest."""
        results: list[DeliveryResult] = []
        for message in messages:
            results.append(await self.dispatch(message))
        return results

    async def mark_read(self, message_id: str) -> None:
        """Best effort read receipt."""
        try:
            result = await self._messenger.mark_read(message_id)
            if not result.success:
                logger.info("mark_read failed for %s: %s", message_id, result.error)
        except Exception as exc:
            logger.info("mark_read error for %s: %s", message_id, exc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  INBOUND — converting provider payloads into InboundMessages
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChannelIngest(ABC):
    """Abstract inbound channel — parses a provider webhook body."""

    channel_name: str = ""

    @abstractmethod
    def parse(self, raw_input: dict[str, Any]) -> WebhookBatch:
        """Parse provider-specific data into messages and status events."""
