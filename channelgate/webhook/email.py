"""Inbound email webhook mapping (SendGrid / Mailgun style JSON)."""

from __future__ import annotations

from email.utils import parseaddr
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

_EVENT_STATUS = {
    "delivered": "delivered",
    "open": "read",
    "opened": "read",
    "bounce": "failed",
    "bounced": "failed",
    "dropped": "failed",
}


def _address(raw: str | None) -> str:
    if not raw:
        return ""
    _, addr = parseaddr(raw)
    return (addr or raw).strip().lower()


def _attachment_type(content_type: str | None) -> MessageType:
    ct = (content_type or "").lower()
    if ct.startswith("image/"):
        return MessageType.IMAGE
    if ct.startswith("audio/"):
        return MessageType.AUDIO
    return MessageType.DOCUMENT


def _map_status(item: dict[str, Any]) -> StatusUpdate | None:
    status = _EVENT_STATUS.get(str(item.get("event", "")).lower())
    message_id = item.get("message_id") or item.get("sg_message_id") or item.get("Message-Id")
    if status is None or not message_id:
        return None
    error = item.get("reason") if status == "failed" else None
    return StatusUpdate(
        provider=Provider.EMAIL,
        provider_message_id=message_id,
        status=status,
        timestamp=to_int_timestamp(item.get("timestamp")),
        recipient_id=_address(item.get("email") or item.get("recipient")) or None,
        error=error,
    )


def _map_message(item: dict[str, Any]) -> CanonicalMessageEvent:
    sender_raw = item.get("from") or item.get("sender") or ""
    sender_name, _ = parseaddr(sender_raw)
    text = (
        item.get("text")
        or item.get("body-plain")
        or item.get("html")
        or item.get("body-html")
        or ""
    )
    attachments = [
        Attachment(
            type=_attachment_type(a.get("content_type")),
            url=a["url"],
            filename=a.get("filename"),
            mime_type=a.get("content_type"),
        )
        for a in item.get("attachments", []) or []
        if isinstance(a, dict) and a.get("url")
    ]
    message_type = MessageType.TEXT
    if attachments and not text:
        message_type = attachments[0].type
    return CanonicalMessageEvent(
        provider=Provider.EMAIL,
        sender_id=_address(sender_raw),
        sender_name=sender_name or None,
        message_type=message_type,
        text=text,
        subject=item.get("subject"),
        attachments=attachments,
        provider_message_id=item.get("message_id") or item.get("Message-Id") or None,
        timestamp=to_int_timestamp(item.get("timestamp")),
    )


def map_payload(payload: dict[str, Any] | list[Any]) -> MappedPayload:
    """Map an inbound email or an email event callback batch.

    A JSON list is treated as an event batch (SendGrid event webhook);
    an object carrying ``event`` is a single status callback; anything else
    is an inbound message.
    """
    mapped = MappedPayload()
    items = payload if isinstance(payload, list) else [payload]
    for item in items:
        if not isinstance(item, dict):
            continue
        if "event" in item:
            update = _map_status(item)
            if update is not None:
                mapped.statuses.append(update)
            continue
        mapped.add_native_id(_address(item.get("to") or item.get("recipient")) or None)
        event = _map_message(item)
        mapped.messages.append(event)
        if is_opt_out(event.subject) or is_opt_out(event.text):
            mapped.opt_outs.append(OptOutSignal(Provider.EMAIL, event.sender_id))
    return mapped
