"""Instagram Messaging envelope mapping.

Accepts the standard ``entry[].messaging[]`` shape (page id in ``entry[].id``)
and the flat ``messaging[]`` variant some relays forward. Timestamps arrive in
milliseconds. Echoes of the page's own messages are skipped.
"""

from __future__ import annotations

from typing import Any

from channelgate.models import Provider
from channelgate.webhook.canonical import handle_verification, is_opt_out, to_int_timestamp
from channelgate.webhook.models import (
    Attachment,
    CanonicalMessageEvent,
    MappedPayload,
    MessageType,
    OptOutSignal,
    StatusUpdate,
)

__all__ = ["handle_verification", "map_payload"]

_ATTACHMENT_TYPES = {
    "image": MessageType.IMAGE,
    "audio": MessageType.AUDIO,
    "video": MessageType.DOCUMENT,
    "file": MessageType.DOCUMENT,
    "document": MessageType.DOCUMENT,
}


def _map_message(event: dict[str, Any]) -> CanonicalMessageEvent | None:
    message = event.get("message", {})
    if message.get("is_echo"):
        return None

    text = message.get("text") or ""
    message_type = MessageType.TEXT
    attachments: list[Attachment] = []

    raw_attachments = message.get("attachments") or []
    if raw_attachments:
        first = raw_attachments[0]
        kind = _ATTACHMENT_TYPES.get(first.get("type", ""))
        payload = first.get("payload") or {}
        url = payload.get("url")
        if kind is not None and url:
            message_type = kind
            attachments.append(Attachment(type=kind, url=url, filename=payload.get("name")))
            if not text:
                text = f"[{first.get('type', 'attachment').capitalize()}]"

    return CanonicalMessageEvent(
        provider=Provider.INSTAGRAM,
        sender_id=event.get("sender", {}).get("id", ""),
        message_type=message_type,
        text=text,
        attachments=attachments,
        provider_message_id=message.get("mid") or None,
        timestamp=to_int_timestamp(event.get("timestamp"), millis=True),
    )


def _map_statuses(event: dict[str, Any]) -> list[StatusUpdate]:
    recipient = event.get("sender", {}).get("id")
    timestamp = to_int_timestamp(event.get("timestamp"), millis=True)
    updates: list[StatusUpdate] = []
    read_mid = event.get("read", {}).get("mid")
    if read_mid:
        updates.append(StatusUpdate(
            Provider.INSTAGRAM, read_mid, "read", timestamp, recipient_id=recipient,
        ))
    for mid in event.get("delivery", {}).get("mids", []) or []:
        updates.append(StatusUpdate(
            Provider.INSTAGRAM, mid, "delivered", timestamp, recipient_id=recipient,
        ))
    return updates


def _iter_messaging(payload: dict[str, Any]) -> list[tuple[str | None, dict[str, Any]]]:
    events: list[tuple[str | None, dict[str, Any]]] = []
    for entry in payload.get("entry", []):
        for item in entry.get("messaging", []):
            events.append((entry.get("id"), item))
    for item in payload.get("messaging", []):
        events.append((item.get("recipient", {}).get("id"), item))
    return events


def map_payload(payload: dict[str, Any]) -> MappedPayload:
    """Map an Instagram Messaging webhook envelope."""
    mapped = MappedPayload()
    for page_id, item in _iter_messaging(payload):
        mapped.add_native_id(page_id)
        if "message" in item:
            event = _map_message(item)
            if event is None:
                continue
            mapped.messages.append(event)
            if event.message_type is MessageType.TEXT and is_opt_out(event.text):
                mapped.opt_outs.append(OptOutSignal(Provider.INSTAGRAM, event.sender_id))
        else:
            mapped.statuses.extend(_map_statuses(item))
    return mapped
