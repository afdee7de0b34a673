"""Generic CRM connector payload mapping.

Connectors post either a single message object or
``{"messages": [...], "statuses": [...]}``.
"""

from __future__ import annotations

from typing import Any

from channelgate.models import Provider
from channelgate.webhook.canonical import is_opt_out, to_int_timestamp
from channelgate.webhook.models import (
    Attachment,
    CanonicalMessageEvent,
    MappedPayload,
    MessageType,
    OptOutSignal,
    StatusUpdate,
)

_STATUSES = {"delivered", "read", "failed"}


def _message_type(raw: Any) -> MessageType:
    try:
        return MessageType(str(raw or "text").lower())
    except ValueError:
        return MessageType.TEXT


def _map_message(item: dict[str, Any]) -> CanonicalMessageEvent:
    attachments = []
    for raw in item.get("attachments", []) or []:
        if isinstance(raw, dict) and raw.get("url"):
            attachments.append(Attachment(
                type=_message_type(raw.get("type", "document")),
                url=raw["url"],
                filename=raw.get("filename"),
                mime_type=raw.get("mime_type"),
            ))
    return CanonicalMessageEvent(
        provider=Provider.GENERIC,
        sender_id=str(item.get("sender", "")),
        sender_name=item.get("sender_name"),
        message_type=_message_type(item.get("type")),
        text=item.get("text") or "",
        attachments=attachments,
        provider_message_id=item.get("message_id") or None,
        timestamp=to_int_timestamp(item.get("timestamp")),
    )


def map_payload(payload: dict[str, Any]) -> MappedPayload:
    mapped = MappedPayload()
    mapped.add_native_id(payload.get("connector_id"))

    if "messages" in payload or "statuses" in payload:
        messages = payload.get("messages", []) or []
    else:
        messages = [payload]

    for item in messages:
        if not isinstance(item, dict):
            continue
        event = _map_message(item)
        mapped.messages.append(event)
        if is_opt_out(event.text):
            mapped.opt_outs.append(OptOutSignal(Provider.GENERIC, event.sender_id))

    for item in payload.get("statuses", []) or []:
        status = str(item.get("status", "")).lower()
        if status in _STATUSES and item.get("message_id"):
            mapped.statuses.append(StatusUpdate(
                provider=Provider.GENERIC,
                provider_message_id=item["message_id"],
                status=status,
                timestamp=to_int_timestamp(item.get("timestamp")),
                error=item.get("error"),
            ))
    return mapped
