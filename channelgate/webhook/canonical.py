"""Helpers shared by the per-provider payload mappers."""

from __future__ import annotations

import hmac
from typing import Any

from channelgate.webhook.models import (
    CanonicalMessageEvent,
    EnrichmentJob,
    EnrichmentKind,
    MessageType,
)

OPT_OUT_WORDS = frozenset({"stop", "unsubscribe", "opt out", "optout"})


def is_opt_out(text: str | None) -> bool:
    if not text:
        return False
    return text.strip().lower() in OPT_OUT_WORDS


def enrichment_jobs(event: CanonicalMessageEvent) -> list[EnrichmentJob]:
    """Classify attachments into follow-up jobs by declared type.

    audio -> transcription, image -> image analysis,
    document named ``*.pdf`` -> PDF summary.
    """
    jobs: list[EnrichmentJob] = []
    for attachment in event.attachments:
        if attachment.type is MessageType.AUDIO:
            jobs.append(EnrichmentJob(EnrichmentKind.TRANSCRIPTION, attachment))
        elif attachment.type is MessageType.IMAGE:
            jobs.append(EnrichmentJob(EnrichmentKind.IMAGE_ANALYSIS, attachment))
        elif attachment.type is MessageType.DOCUMENT:
            name = (attachment.filename or "").lower()
            if name.endswith(".pdf"):
                jobs.append(EnrichmentJob(EnrichmentKind.PDF_SUMMARY, attachment))
    return jobs


def to_int_timestamp(raw: Any, *, millis: bool = False) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 0
    return value // 1000 if millis else value


def handle_verification(
    params: dict[str, str], verify_token: str | None,
) -> dict[str, Any]:
    """Meta webhook subscription handshake (GET).

    Returns the challenge on ``hub.mode=subscribe`` with a matching
    ``hub.verify_token``; 403 otherwise, including when no token is configured.
    """
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token", "")
    if mode == "subscribe" and verify_token and hmac.compare_digest(token, verify_token):
        return {"status_code": 200, "content": params.get("hub.challenge", "")}
    return {"status_code": 403, "error": "Verification failed"}
