"""Tests for shared mapping helpers: opt-out, enrichment classification, handshake."""

from __future__ import annotations

from channelgate.models import Provider
from channelgate.webhook.canonical import (
    enrichment_jobs,
    handle_verification,
    is_opt_out,
    to_int_timestamp,
)
from channelgate.webhook.models import (
    Attachment,
    CanonicalMessageEvent,
    EnrichmentKind,
    IngressResult,
    MessageType,
)


def _make_event(*attachments: Attachment) -> CanonicalMessageEvent:
    return CanonicalMessageEvent(
        provider=Provider.WHATSAPP,
        sender_id="1555",
        message_type=MessageType.TEXT,
        text="x",
        attachments=list(attachments),
    )


class TestOptOut:
    def test_keywords_case_insensitive(self) -> None:
        assert is_opt_out("STOP")
        assert is_opt_out("  Unsubscribe ")

    def test_sentence_containing_stop_is_not_opt_out(self) -> None:
        assert not is_opt_out("please don't stop")

    def test_empty(self) -> None:
        assert not is_opt_out(None)
        assert not is_opt_out("")


class TestEnrichmentJobs:
    def test_audio_image_pdf(self) -> None:
        event = _make_event(
            Attachment(MessageType.AUDIO, "https://m/a"),
            Attachment(MessageType.IMAGE, "https://m/i"),
            Attachment(MessageType.DOCUMENT, "https://m/d", filename="Invoice.PDF"),
        )
        kinds = [job.kind for job in enrichment_jobs(event)]
        assert kinds == [
            EnrichmentKind.TRANSCRIPTION,
            EnrichmentKind.IMAGE_ANALYSIS,
            EnrichmentKind.PDF_SUMMARY,
        ]

    def test_non_pdf_document_skipped(self) -> None:
        event = _make_event(Attachment(MessageType.DOCUMENT, "https://m/d", filename="notes.docx"))
        assert enrichment_jobs(event) == []

    def test_document_without_filename_skipped(self) -> None:
        event = _make_event(Attachment(MessageType.DOCUMENT, "https://m/d"))
        assert enrichment_jobs(event) == []


class TestTimestamps:
    def test_seconds(self) -> None:
        assert to_int_timestamp("1700000000") == 1700000000

    def test_millis(self) -> None:
        assert to_int_timestamp(1700000000123, millis=True) == 1700000000

    def test_garbage_is_zero(self) -> None:
        assert to_int_timestamp(None) == 0
        assert to_int_timestamp("abc") == 0


class TestHandshake:
    def test_valid_subscribe_returns_challenge(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "tok", "hub.challenge": "c123"}
        result = handle_verification(params, "tok")
        assert result == {"status_code": 200, "content": "c123"}

    def test_wrong_token_forbidden(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "c"}
        assert handle_verification(params, "tok")["status_code"] == 403

    def test_wrong_mode_forbidden(self) -> None:
        params = {"hub.mode": "unsubscribe", "hub.verify_token": "tok", "hub.challenge": "c"}
        assert handle_verification(params, "tok")["status_code"] == 403

    def test_unconfigured_token_forbidden(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "c"}
        result = handle_verification(params, None)
        assert result == {"status_code": 403, "error": "Verification failed"}


class TestIngressResult:
    def test_failure_body(self) -> None:
        assert IngressResult(success=False, error="tenant_not_found").to_response() == {
            "success": False, "error": "tenant_not_found",
        }

    def test_success_body(self) -> None:
        body = IngressResult(success=True, tenant_id="T1", forwarded=2, statuses=1).to_response()
        assert body == {"success": True, "forwarded": 2, "statuses": 1}
