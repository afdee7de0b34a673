"""WhatsApp Cloud API sender."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from channelgate import metrics
from channelgate.channels.base import OutboundMessage, SendResult, graph_result, post_graph_api

if TYPE_CHECKING:
    from channelgate.tenancy import TenantDirectory

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {"image", "audio", "document", "video"}


class WhatsAppSender:
    """Sends through the tenant's own phone number when the directory has one.

    Tenants without stored credentials share the gateway-wide number.
    """

    channel = "whatsapp"

    def __init__(
        self,
        phone_number_id: str | None,
        access_token: str | None,
        api_base: str = "https://graph.facebook.com/v18.0",
        directory: TenantDirectory | None = None,
    ) -> None:
        self._phone_number_id = phone_number_id
        self._access_token = access_token
        self._api_base = api_base.rstrip("/")
        self._directory = directory

    def _credentials(self, tenant_id: str) -> tuple[str | None, str | None]:
        if self._directory is not None:
            own = self._directory.channel_credentials(tenant_id, self.channel)
            if own is not None:
                return own.external_id, own.access_token
        return self._phone_number_id, self._access_token

    def build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": message.recipient_id,
        }
        media = message.attachments[0] if message.attachments else None
        if message.message_type in _MEDIA_TYPES and media and media.get("url"):
            body: dict[str, Any] = {"link": media["url"]}
            if message.content and message.message_type != "audio":
                body["caption"] = message.content
            if message.message_type == "document" and media.get("filename"):
                body["filename"] = media["filename"]
            payload["type"] = message.message_type
            payload[message.message_type] = body
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.content}
        return payload

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult:
        phone_number_id, access_token = self._credentials(tenant_id)
        if not phone_number_id or not access_token:
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed("whatsapp_not_configured")

        url = f"{self._api_base}/{phone_number_id}/messages"
        try:
            resp = await post_graph_api(url, self.build_payload(message), access_token)
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp send failed for tenant %s: %s", tenant_id, exc)
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed(str(exc) or type(exc).__name__)
        return graph_result(resp, self.channel)
