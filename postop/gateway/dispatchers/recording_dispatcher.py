"""
Recording Messenger — keeps outbound messages in memory.

Used for local runs without WhatsApp credentials and by the test suites.
``fail_next`` lets tests simulate a transport outage.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from postop.gateway.channels import DeliveryResult, Messenger

logger = logging.getLogger("gateway.dispatchers.recording")


class RecordingMessenger(Messenger):
    """Stores every message per phone number."""

    channel_name = "recording"

    def __init__(self) -> None:
        # phone → list of texts
        self._sent: dict[str, list[str]] = defaultdict(list)
        self._read: list[str] = []
        self._fail_next = 0

    async def send(self, phone: str, text: str) -> DeliveryResult:
        if self._fail_next > 0:
            self._fail_next -= 1
            logger.debug("Simulated delivery failure to %s", phone)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=phone,
                error="simulated failure",
            )
        self._sent[phone].append(text)
        logger.debug("Recorded message to %s", phone)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=phone,
        )

    async def mark_read(self, message_id: str) -> DeliveryResult:
        self._read.append(message_id)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=message_id,
        )

    def fail_next(self, count: int = 1) -> None:
        self._fail_next = count

    def messages_to(self, phone: str) -> list[str]:
        return list(self._sent.get(phone, []))

    @property
    def read_receipts(self) -> list[str]:
        return list(self._read)

    @property
    def total_sent(self) -> int:
        return sum(len(v) for v in self._sent.values())

    def clear(self, phone: str | None = None) -> None:
        if phone:
            self._sent.pop(phone, None)
        else:
            self._sent.clear()
            self._read.clear()
