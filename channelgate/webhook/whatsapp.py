"""WhatsApp Cloud API envelope mapping.

Walks every ``entry[].changes[].value`` block: inbound ``messages[]`` become
canonical events, ``statuses[]`` become status updates keyed by the WhatsApp
message id (``wamid``).
"""

from __future__ import annotations

import logging
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

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_BASE = "https://graph.facebook.com/v18.0"

_STATUS_MAP = {
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
    "undeliverable": "failed",
}

__all__ = ["handle_verification", "map_payload"]


def _media_attachment(
    media: dict[str, Any], kind: MessageType, graph_base: str,
) -> list[Attachment]:
    media_id = media.get("id")
    if not media_id:
        return []
    return [Attachment(
        type=kind,
        url=f"{graph_base.rstrip('/')}/{media_id}",
        filename=media.get("filename"),
        mime_type=media.get("mime_type"),
    )]


def _map_message(
    msg: dict[str, Any], contact_names: dict[str, str], graph_base: str,
) -> CanonicalMessageEvent:
    msg_type = msg.get("type", "text")
    attachments: list[Attachment] = []
    message_type = MessageType.TEXT

    if msg_type == "text":
        text = msg.get("text", {}).get("body", "")
    elif msg_type == "image":
        image = msg.get("image", {})
        text = image.get("caption") or "[Image]"
        message_type = MessageType.IMAGE
        attachments = _media_attachment(image, MessageType.IMAGE, graph_base)
    elif msg_type == "audio":
        text = "[Audio]"
        message_type = MessageType.AUDIO
        attachments = _media_attachment(msg.get("audio", {}), MessageType.AUDIO, graph_base)
    elif msg_type in ("document", "video"):
        media = msg.get(msg_type, {})
        if msg_type == "video":
            text = media.get("caption") or "[Video]"
        else:
            text = media.get("caption") or f"[Document: {media.get('filename') or 'Unknown'}]"
        message_type = MessageType.DOCUMENT
        attachments = _media_attachment(media, MessageType.DOCUMENT, graph_base)
    elif msg_type == "location":
        loc = msg.get("location", {})
        label = loc.get("name") or loc.get("address")
        text = f"[Location: {label}]" if label else "[Location]"
    elif msg_type == "contacts":
        text = "[Contact]"
    else:
        text = f"[{msg_type}]"

    sender = msg.get("from", "")
    return CanonicalMessageEvent(
        provider=Provider.WHATSAPP,
        sender_id=sender,
        sender_name=contact_names.get(sender),
        message_type=message_type,
        text=text,
        attachments=attachments,
        provider_message_id=msg.get("id") or None,
        timestamp=to_int_timestamp(msg.get("timestamp")),
    )


def _map_status(status: dict[str, Any]) -> StatusUpdate | None:
    mapped = _STATUS_MAP.get(status.get("status", ""))
    message_id = status.get("id")
    if mapped is None or not message_id:
        return None
    error = None
    errors = status.get("errors") or []
    if mapped == "failed" and errors:
        error = errors[0].get("title") or errors[0].get("message")
    return StatusUpdate(
        provider=Provider.WHATSAPP,
        provider_message_id=message_id,
        status=mapped,
        timestamp=to_int_timestamp(status.get("timestamp")),
        recipient_id=status.get("recipient_id"),
        error=error,
    )


def map_payload(
    payload: dict[str, Any], graph_base: str = DEFAULT_GRAPH_BASE,
) -> MappedPayload:
    """Map a WhatsApp Cloud API webhook envelope."""
    mapped = MappedPayload()
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            mapped.add_native_id(value.get("metadata", {}).get("phone_number_id"))

            contact_names = {
                c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                for c in value.get("contacts", [])
            }
            for msg in value.get("messages", []):
                event = _map_message(msg, contact_names, graph_base)
                mapped.messages.append(event)
                if is_opt_out(event.text) and event.message_type is MessageType.TEXT:
                    mapped.opt_outs.append(OptOutSignal(Provider.WHATSAPP, event.sender_id))

            for status in value.get("statuses", []):
                update = _map_status(status)
                if update is None:
                    logger.debug("Ignoring WhatsApp status %r", status.get("status"))
                    continue
                mapped.statuses.append(update)
    return mapped
