"""Common types for native channel senders."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from channelgate import metrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BACKOFF_CAP_SECONDS = 30


@dataclass
class OutboundMessage:
    recipient_id: str
    content: str
    message_type: str = "text"
    attachments: list[dict[str, Any]] = field(default_factory=list)
    subject: str | None = None


@dataclass
class SendResult:
    status: str  # "sent" | "failed"
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"

    @classmethod
    def failed(cls, error: str) -> SendResult:
        return cls(status="failed", error=error)


class ChannelSender(Protocol):
    channel: str

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult: ...


def should_retry(status_code: int) -> bool:
    """Only retry on 429 (rate limit) or 5xx (server error)."""
    return status_code == 429 or status_code >= 500


async def post_graph_api(
    url: str, payload: dict[str, Any], access_token: str,
) -> httpx.Response:
    """POST to the Graph API, retrying 429/5xx with backoff capped at 30s."""
    headers = {"Authorization": f"Bearer {access_token}"}
    async with httpx.AsyncClient(verify=True) as client:
        for attempt in range(MAX_RETRIES + 1):
            resp = await client.post(url, json=payload, headers=headers)
            if resp.status_code < 400 or not should_retry(resp.status_code):
                return resp
            if attempt < MAX_RETRIES:
                await asyncio.sleep(min(2 ** attempt, BACKOFF_CAP_SECONDS))
    return resp


def graph_result(resp: httpx.Response, channel: str) -> SendResult:
    """Translate a Graph API send response into a SendResult."""
    if resp.status_code >= 400:
        try:
            error = resp.json().get("error", {}).get("message") or f"HTTP {resp.status_code}"
        except ValueError:
            error = f"HTTP {resp.status_code}"
        metrics.CHANNEL_SENDS_TOTAL.labels(channel=channel, status="failed").inc()
        return SendResult.failed(str(error))

    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning("Non-JSON %s send response (HTTP %d)", channel, resp.status_code)
        data = {}
    message_id = data.get("message_id")
    if message_id is None and data.get("messages"):
        message_id = data["messages"][0].get("id")
    metrics.CHANNEL_SENDS_TOTAL.labels(channel=channel, status="sent").inc()
    return SendResult(status="sent", message_id=message_id)
