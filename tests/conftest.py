"""Shared test fixtures for channelgate."""

from __future__ import annotations

import hashlib
import hmac as hmac_mod
import json
from collections.abc import Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI

from channelgate.api.app import create_app
from channelgate.audit.logger import AuditLogger
from channelgate.channels.base import OutboundMessage, SendResult
from channelgate.config import GatewayConfig
from channelgate.models import AuditEvent, AuditEventType, ChannelKind, Provider, RiskLevel
from channelgate.storage.db import GatewayDB


@pytest.fixture
def gateway_db() -> Iterator[GatewayDB]:
    db = GatewayDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Fakes ---


class FakeSender:
    """ChannelSender double that records every message it is asked to send."""

    def __init__(self, channel: str, result: SendResult | None = None) -> None:
        self.channel = channel
        self.result = result or SendResult(status="sent", message_id=f"{channel}-msg-1")
        self.sent: list[tuple[str, OutboundMessage]] = []

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult:
        self.sent.append((tenant_id, message))
        return self.result


def make_conversation_service(**kwargs: Any) -> AsyncMock:
    """AsyncMock standing in for the core conversation service."""
    service = AsyncMock()
    service.record_inbound_message.return_value = {"ok": True}
    service.link_conversation.return_value = kwargs.get("conversation_id", "conv-1")
    return service


# --- Factory functions for test data ---


def make_config(**kwargs: Any) -> GatewayConfig:
    """Factory for GatewayConfig with test-friendly defaults."""
    defaults: dict[str, Any] = {
        "db_path": ":memory:",
        "admin_token": "admin-test-token",
        "chat_token_secret": "chat-test-secret",
        "provider_secrets": {},
        "verify_tokens": {Provider.WHATSAPP: "wa-verify", Provider.INSTAGRAM: "ig-verify"},
    }
    defaults.update(kwargs)
    return GatewayConfig(**defaults)


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.WEBHOOK_REJECTED,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


def sign_body(secret: str, body: bytes) -> str:
    sig = hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def make_whatsapp_payload(
    text: str = "Hello",
    phone_number_id: str = "123",
    sender: str = "15551234567",
    message_id: str = "wamid.1",
    timestamp: str = "1700000000",
    **message: Any,
) -> dict[str, Any]:
    """A WhatsApp Cloud API envelope with one inbound message."""
    msg: dict[str, Any] = {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": text},
    }
    msg.update(message)
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": sender, "profile": {"name": "Ana"}}],
                    "messages": [msg],
                },
            }],
        }],
    }


def make_whatsapp_status_payload(
    status: str = "delivered",
    message_id: str = "wamid.out.1",
    phone_number_id: str = "123",
    **extra: Any,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": message_id,
        "status": status,
        "timestamp": "1700000100",
        "recipient_id": "15551234567",
    }
    item.update(extra)
    return {
        "entry": [{
            "changes": [{
                "value": {
                    "metadata": {"phone_number_id": phone_number_id},
                    "statuses": [item],
                },
            }],
        }],
    }


def make_instagram_payload(
    text: str = "hi there",
    page_id: str = "PAGE1",
    sender: str = "IGSID1",
    mid: str = "m_1",
    **message: Any,
) -> dict[str, Any]:
    msg: dict[str, Any] = {"mid": mid, "text": text}
    msg.update(message)
    return {
        "object": "instagram",
        "entry": [{
            "id": page_id,
            "time": 1700000000000,
            "messaging": [{
                "sender": {"id": sender},
                "recipient": {"id": page_id},
                "timestamp": 1700000000123,
                "message": msg,
            }],
        }],
    }


def to_body(payload: Any) -> bytes:
    return json.dumps(payload).encode()


def make_app(gateway_db: GatewayDB, **kwargs: Any) -> FastAPI:
    """Gateway app wired to fakes; no network collaborators are constructed."""
    config = kwargs.pop("config", None) or make_config()
    defaults: dict[str, Any] = {
        "db": gateway_db,
        "conversation": make_conversation_service(),
        "automation": AsyncMock(),
        "transcription": AsyncMock(),
        "media_analysis": AsyncMock(),
        "reply_generator": AsyncMock(**{"generate_reply.return_value": "Hi from the bot"}),
        "senders": {
            ChannelKind.WHATSAPP: FakeSender("whatsapp"),
            ChannelKind.INSTAGRAM: FakeSender("instagram"),
            ChannelKind.EMAIL: FakeSender("email"),
        },
    }
    defaults.update(kwargs)
    return create_app(config, **defaults)
