"""Instagram Messaging sender (Graph API ``/me/messages``)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from channelgate import metrics
from channelgate.channels.base import OutboundMessage, SendResult, graph_result, post_graph_api

if TYPE_CHECKING:
    from channelgate.tenancy import TenantDirectory

logger = logging.getLogger(__name__)


class InstagramSender:
    channel = "instagram"

    def __init__(
        self,
        access_token: str | None,
        api_base: str = "https://graph.facebook.com/v18.0",
        directory: TenantDirectory | None = None,
    ) -> None:
        self._access_token = access_token
        self._api_base = api_base.rstrip("/")
        self._directory = directory

    def _access_token_for(self, tenant_id: str) -> str | None:
        if self._directory is not None:
            own = self._directory.channel_credentials(tenant_id, self.channel)
            if own is not None:
                return own.access_token
        return self._access_token

    def build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        media = message.attachments[0] if message.attachments else None
        if message.message_type != "text" and media and media.get("url"):
            ig_type = "file" if message.message_type == "document" else message.message_type
            content: dict[str, Any] = {
                "attachment": {"type": ig_type, "payload": {"url": media["url"]}},
            }
        else:
            content = {"text": message.content}
        return {"recipient": {"id": message.recipient_id}, "message": content}

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult:
        access_token = self._access_token_for(tenant_id)
        if not access_token:
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed("instagram_not_configured")

        url = f"{self._api_base}/me/messages"
        try:
            resp = await post_graph_api(url, self.build_payload(message), access_token)
        except httpx.HTTPError as exc:
            logger.warning("Instagram send failed for tenant %s: %s", tenant_id, exc)
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed(str(exc) or type(exc).__name__)
        return graph_result(resp, self.channel)
