"""Interfaces to the services this gateway feeds, and an HTTP client for them.

Conversation persistence, workflow automation, transcription, media analysis
and reply generation are owned by the core services. The gateway talks to
them through the narrow protocols below; ``CoreServicesClient`` implements
all of them over HTTP.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from channelgate.webhook.models import CanonicalMessageEvent, OptOutSignal, StatusUpdate

logger = logging.getLogger(__name__)


class ConversationService(Protocol):
    async def record_inbound_message(self, event: CanonicalMessageEvent) -> dict[str, Any] | None: ...

    async def record_status_update(self, update: StatusUpdate) -> None: ...

    async def record_opt_out(self, signal: OptOutSignal) -> None: ...

    async def attach_enrichment(
        self,
        tenant_id: str,
        provider_message_id: str | None,
        kind: str,
        content: str,
    ) -> None: ...

    async def link_conversation(
        self, tenant_id: str, session_id: str, contact: dict[str, Any],
    ) -> str | None: ...


class AutomationService(Protocol):
    async def execute_workflow_by_trigger(
        self, trigger_kind: str, payload: dict[str, Any],
    ) -> Any: ...


class TranscriptionService(Protocol):
    async def transcribe_from_url(self, url: str, tenant_id: str) -> str: ...


class MediaAnalysisService(Protocol):
    async def analyze_image_from_url(self, url: str, tenant_id: str) -> str: ...

    async def analyze_pdf_from_url(self, url: str, tenant_id: str) -> str: ...


class ReplyGenerator(Protocol):
    async def generate_reply(
        self, tenant_id: str, session_id: str, history: list[dict[str, Any]],
    ) -> str | None: ...


class CoreServicesClient:
    """httpx client for the core services API.

    Every call raises ``httpx.HTTPError`` on transport failure or non-2xx;
    callers on background paths log and swallow.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.post(path, json=body)
        resp.raise_for_status()
        if not resp.content:
            return {}
        data = resp.json()
        return data if isinstance(data, dict) else {"result": data}

    # --- ConversationService ---

    async def record_inbound_message(self, event: CanonicalMessageEvent) -> dict[str, Any] | None:
        return await self._post("/internal/conversations/inbound", event.to_dict())

    async def record_status_update(self, update: StatusUpdate) -> None:
        await self._post("/internal/conversations/status", update.to_dict())

    async def record_opt_out(self, signal: OptOutSignal) -> None:
        await self._post("/internal/conversations/opt-out", {
            "provider": signal.provider.value,
            "tenantId": signal.tenant_id,
            "senderId": signal.sender_id,
        })

    async def attach_enrichment(
        self,
        tenant_id: str,
        provider_message_id: str | None,
        kind: str,
        content: str,
    ) -> None:
        await self._post("/internal/conversations/enrichment", {
            "tenantId": tenant_id,
            "providerMessageId": provider_message_id,
            "kind": kind,
            "content": content,
        })

    async def link_conversation(
        self, tenant_id: str, session_id: str, contact: dict[str, Any],
    ) -> str | None:
        data = await self._post("/internal/conversations/link", {
            "tenantId": tenant_id,
            "sessionId": session_id,
            "contact": contact,
        })
        return data.get("conversationId")

    # --- AutomationService ---

    async def execute_workflow_by_trigger(
        self, trigger_kind: str, payload: dict[str, Any],
    ) -> Any:
        return await self._post("/internal/workflows/trigger", {
            "triggerKind": trigger_kind,
            "payload": payload,
        })

    # --- TranscriptionService / MediaAnalysisService ---

    async def transcribe_from_url(self, url: str, tenant_id: str) -> str:
        data = await self._post("/internal/ai/transcribe", {"url": url, "tenantId": tenant_id})
        return str(data.get("text", ""))

    async def analyze_image_from_url(self, url: str, tenant_id: str) -> str:
        data = await self._post("/internal/ai/analyze-image", {"url": url, "tenantId": tenant_id})
        return str(data.get("summary", ""))

    async def analyze_pdf_from_url(self, url: str, tenant_id: str) -> str:
        data = await self._post("/internal/ai/analyze-pdf", {"url": url, "tenantId": tenant_id})
        return str(data.get("summary", ""))

    # --- ReplyGenerator ---

    async def generate_reply(
        self, tenant_id: str, session_id: str, history: list[dict[str, Any]],
    ) -> str | None:
        data = await self._post("/internal/ai/reply", {
            "tenantId": tenant_id,
            "sessionId": session_id,
            "history": history,
        })
        return data.get("reply")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
