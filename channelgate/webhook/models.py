"""Data models for the webhook ingress pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from channelgate.models import Provider


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"


class EnrichmentKind(str, Enum):
    TRANSCRIPTION = "transcription"
    IMAGE_ANALYSIS = "image_analysis"
    PDF_SUMMARY = "pdf_summary"


@dataclass
class Attachment:
    type: MessageType
    url: str
    filename: str | None = None
    mime_type: str | None = None


@dataclass
class CanonicalMessageEvent:
    """Normalized inbound message handed to the conversation layer."""

    provider: Provider
    sender_id: str
    message_type: MessageType
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    provider_message_id: str | None = None  # at most one per event
    timestamp: int = 0  # unix seconds
    tenant_id: str | None = None
    sender_name: str | None = None
    subject: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "tenantId": self.tenant_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "messageType": self.message_type.value,
            "text": self.text,
            "subject": self.subject,
            "attachments": [
                {
                    "type": a.type.value,
                    "url": a.url,
                    "filename": a.filename,
                    "mimeType": a.mime_type,
                }
                for a in self.attachments
            ],
            "providerMessageId": self.provider_message_id,
            "timestamp": self.timestamp,
        }


@dataclass
class StatusUpdate:
    """Delivery/read/failed callback keyed by the provider message id."""

    provider: Provider
    provider_message_id: str
    status: str  # "delivered" | "read" | "failed"
    timestamp: int = 0
    recipient_id: str | None = None
    error: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "tenantId": self.tenant_id,
            "providerMessageId": self.provider_message_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "recipientId": self.recipient_id,
            "error": self.error,
        }


@dataclass
class OptOutSignal:
    provider: Provider
    sender_id: str
    tenant_id: str | None = None


@dataclass
class EnrichmentJob:
    kind: EnrichmentKind
    attachment: Attachment


@dataclass
class MappedPayload:
    """Everything one provider envelope produced, in payload order."""

    messages: list[CanonicalMessageEvent] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)
    opt_outs: list[OptOutSignal] = field(default_factory=list)
    native_ids: list[str] = field(default_factory=list)

    def add_native_id(self, native_id: str | None) -> None:
        if native_id and native_id not in self.native_ids:
            self.native_ids.append(native_id)


@dataclass
class IngressResult:
    """Soft-failure response body for provider webhooks."""

    success: bool
    error: str | None = None
    tenant_id: str | None = None
    forwarded: int = 0
    statuses: int = 0

    def to_response(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {"success": True, "forwarded": self.forwarded, "statuses": self.statuses}
