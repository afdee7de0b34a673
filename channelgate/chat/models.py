"""State for the public chat widget: sessions, messages and linked channels."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from channelgate.models import ChannelKind


@dataclass
class ChatMessage:
    role: str  # "user" | "assistant" | "system"
    text: str
    timestamp: float = field(default_factory=time.time)
    channel: str | None = None
    delivery_status: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": int(self.timestamp * 1000),
        }
        if self.channel:
            data["channel"] = self.channel
        if self.delivery_status:
            data["deliveryStatus"] = self.delivery_status
        return data


@dataclass
class LinkedChannel:
    """One external contact attached to a session.

    Code fields are cleared on successful verification.
    """

    kind: ChannelKind
    contact: str
    verified: bool = False
    linked_at: float = field(default_factory=time.time)
    verification_code: str | None = None
    code_issued_at: float | None = None
    verification_attempts: int = 0
    last_verification_request: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "contact": self.contact,
            "verified": self.verified,
            "linkedAt": int(self.linked_at * 1000),
        }


@dataclass
class PublicChatSession:
    tenant_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    messages: list[ChatMessage] = field(default_factory=list)
    conversation_id: str | None = None
    channels: dict[ChannelKind, LinkedChannel] = field(default_factory=dict)


@dataclass
class MagicLinkInfo:
    session_id: str
    tenant_id: str
    email: str
    expires_at: int


@dataclass
class VerificationResult:
    ok: bool
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error}


@dataclass
class ChannelSendOutcome:
    channel: ChannelKind
    ok: bool
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "ok": self.ok,
            "messageId": self.message_id,
            "error": self.error,
        }
