"""
WhatsApp Cloud API Messenger — delivers text messages via the Graph API.

Configuration (environment variables):
  WHATSAPP_ACCESS_TOKEN     — permanent or system-user access token
  WHATSAPP_PHONE_NUMBER_ID  — the business phone number id
  WHATSAPP_API_VERSION      — Graph API version (default v21.0)
"""

from __future__ import annotations

import logging
import os

import httpx

from postop.gateway.channels import DeliveryResult, Messenger

logger = logging.getLogger("gateway.dispatchers.whatsapp")

GRAPH_API_BASE = "https://graph.facebook.com"


class WhatsAppCloudMessenger(Messenger):
    """Sends text messages and read receipts through WhatsApp Cloud API."""

    channel_name = "whatsapp"

    def __init__(
        self,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        api_version: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._access_token = access_token or os.getenv("WHATSAPP_ACCESS_TOKEN", "")
        self._phone_number_id = phone_number_id or os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
        self._api_version = api_version or os.getenv("WHATSAPP_API_VERSION", "v21.0")
        self._timeout = timeout
        self._client = client

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self._api_version}/{self._phone_number_id}/messages"

    @property
    def configured(self) -> bool:
        return bool(self._access_token and self._phone_number_id)

    async def send(self, phone: str, text: str) -> DeliveryResult:
        if not phone:
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=phone,
                error="No recipient phone number",
            )
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        return await self._post(payload, recipient=phone)

    async def mark_read(self, message_id: str) -> DeliveryResult:
        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        }
        return await self._post(payload, recipient=message_id)

    # ── Internal ──

    async def _post(self, payload: dict, recipient: str) -> DeliveryResult:
        if not self.configured:
            logger.warning("WhatsApp credentials not set — cannot deliver to %s", recipient)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=recipient,
                error="WhatsApp messenger not configured",
            )

        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self.messages_url, json=payload, headers=headers, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(
                        self.messages_url, json=payload, headers=headers, timeout=self._timeout,
                    )
        except httpx.HTTPError as exc:
            logger.error("WhatsApp request to %s failed: %s", recipient, exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=recipient,
                error=str(exc),
            )

        if resp.status_code >= 400:
            logger.error(
                "WhatsApp API error %d for %s: %s",
                resp.status_code, recipient, resp.text[:300],
            )
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=recipient,
                error=f"HTTP {resp.status_code}",
            )

        provider_id = None
        try:
            body = resp.json()
            messages = body.get("messages") or []
            if messages:
                provider_id = messages[0].get("id")
        except ValueError:
            pass

        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=recipient,
            provider_message_id=provider_id,
        )
