"""Tests for per-provider payload mapping into canonical events."""

from __future__ import annotations

from channelgate.models import Provider
from channelgate.webhook import email, generic, instagram, whatsapp
from channelgate.webhook.models import MessageType
from tests.conftest import (
    make_instagram_payload,
    make_whatsapp_payload,
    make_whatsapp_status_payload,
)


class TestWhatsAppMapper:
    def test_text_message(self) -> None:
        mapped = whatsapp.map_payload(make_whatsapp_payload(text="Hello"))
        assert mapped.native_ids == ["123"]
        assert len(mapped.messages) == 1
        event = mapped.messages[0]
        assert event.provider is Provider.WHATSAPP
        assert event.sender_id == "15551234567"
        assert event.sender_name == "Ana"
        assert event.message_type is MessageType.TEXT
        assert event.text == "Hello"
        assert event.provider_message_id == "wamid.1"
        assert event.timestamp == 1700000000

    def test_image_uses_caption_and_graph_url(self) -> None:
        payload = make_whatsapp_payload(
            type="image", image={"id": "MEDIA9", "caption": "look", "mime_type": "image/jpeg"},
        )
        event = whatsapp.map_payload(payload, "https://graph.test/v1").messages[0]
        assert event.message_type is MessageType.IMAGE
        assert event.text == "look"
        assert event.attachments[0].url == "https://graph.test/v1/MEDIA9"
        assert event.attachments[0].mime_type == "image/jpeg"

    def test_image_without_caption(self) -> None:
        payload = make_whatsapp_payload(type="image", image={"id": "M1"})
        assert whatsapp.map_payload(payload).messages[0].text == "[Image]"

    def test_audio(self) -> None:
        payload = make_whatsapp_payload(type="audio", audio={"id": "A1"})
        event = whatsapp.map_payload(payload).messages[0]
        assert event.message_type is MessageType.AUDIO
        assert event.text == "[Audio]"
        assert event.attachments[0].type is MessageType.AUDIO

    def test_document_label(self) -> None:
        payload = make_whatsapp_payload(
            type="document", document={"id": "D1", "filename": "report.pdf"},
        )
        event = whatsapp.map_payload(payload).messages[0]
        assert event.message_type is MessageType.DOCUMENT
        assert event.text == "[Document: report.pdf]"
        assert event.attachments[0].filename == "report.pdf"

    def test_video_maps_to_document(self) -> None:
        payload = make_whatsapp_payload(type="video", video={"id": "V1"})
        event = whatsapp.map_payload(payload).messages[0]
        assert event.message_type is MessageType.DOCUMENT
        assert event.text == "[Video]"

    def test_location_and_unknown_types(self) -> None:
        loc = make_whatsapp_payload(type="location", location={"name": "Office"})
        assert whatsapp.map_payload(loc).messages[0].text == "[Location: Office]"
        sticker = make_whatsapp_payload(type="sticker")
        event = whatsapp.map_payload(sticker).messages[0]
        assert event.text == "[sticker]"
        assert event.message_type is MessageType.TEXT

    def test_opt_out_detected(self) -> None:
        mapped = whatsapp.map_payload(make_whatsapp_payload(text="STOP"))
        assert len(mapped.opt_outs) == 1
        assert mapped.opt_outs[0].sender_id == "15551234567"

    def test_statuses(self) -> None:
        mapped = whatsapp.map_payload(make_whatsapp_status_payload("read"))
        assert mapped.messages == []
        assert mapped.statuses[0].status == "read"
        assert mapped.statuses[0].provider_message_id == "wamid.out.1"

    def test_failed_status_carries_error(self) -> None:
        payload = make_whatsapp_status_payload(
            "failed", errors=[{"code": 131026, "title": "Message undeliverable"}],
        )
        update = whatsapp.map_payload(payload).statuses[0]
        assert update.status == "failed"
        assert update.error == "Message undeliverable"

    def test_unknown_status_ignored(self) -> None:
        mapped = whatsapp.map_payload(make_whatsapp_status_payload("sent"))
        assert mapped.statuses == []

    def test_empty_payload(self) -> None:
        mapped = whatsapp.map_payload({})
        assert mapped.messages == [] and mapped.native_ids == []


class TestInstagramMapper:
    def test_text_message(self) -> None:
        mapped = instagram.map_payload(make_instagram_payload())
        assert mapped.native_ids == ["PAGE1"]
        event = mapped.messages[0]
        assert event.sender_id == "IGSID1"
        assert event.text == "hi there"
        assert event.provider_message_id == "m_1"
        assert event.timestamp == 1700000000

    def test_echo_skipped(self) -> None:
        mapped = instagram.map_payload(make_instagram_payload(is_echo=True))
        assert mapped.messages == []

    def test_attachment(self) -> None:
        payload = make_instagram_payload(
            text="", attachments=[{"type": "image", "payload": {"url": "https://cdn/x.jpg"}}],
        )
        event = instagram.map_payload(payload).messages[0]
        assert event.message_type is MessageType.IMAGE
        assert event.text == "[Image]"
        assert event.attachments[0].url == "https://cdn/x.jpg"

    def test_file_attachment_is_document(self) -> None:
        payload = make_instagram_payload(
            text="", attachments=[{"type": "file", "payload": {"url": "https://cdn/a.pdf"}}],
        )
        assert instagram.map_payload(payload).messages[0].message_type is MessageType.DOCUMENT

    def test_flat_messaging_shape(self) -> None:
        payload = {"messaging": [{
            "sender": {"id": "U1"},
            "recipient": {"id": "PAGE2"},
            "timestamp": 1700000000000,
            "message": {"mid": "m_2", "text": "yo"},
        }]}
        mapped = instagram.map_payload(payload)
        assert mapped.native_ids == ["PAGE2"]
        assert mapped.messages[0].text == "yo"

    def test_read_and_delivery_statuses(self) -> None:
        payload = {"entry": [{"id": "PAGE1", "messaging": [
            {"sender": {"id": "U1"}, "timestamp": 1700000000000, "read": {"mid": "m_9"}},
            {"sender": {"id": "U1"}, "timestamp": 1700000000000,
             "delivery": {"mids": ["m_7", "m_8"]}},
        ]}]}
        statuses = instagram.map_payload(payload).statuses
        assert [(s.provider_message_id, s.status) for s in statuses] == [
            ("m_9", "read"), ("m_7", "delivered"), ("m_8", "delivered"),
        ]


class TestEmailMapper:
    def test_inbound_message(self) -> None:
        mapped = email.map_payload({
            "from": "Ana Perez <Ana@Example.com>",
            "to": "Support@Tenant.io",
            "subject": "Order 42",
            "text": "Where is my order?",
            "message_id": "<abc@mail>",
            "attachments": [
                {"url": "https://files/x.pdf", "filename": "x.pdf", "content_type": "application/pdf"},
            ],
        })
        assert mapped.native_ids == ["support@tenant.io"]
        event = mapped.messages[0]
        assert event.sender_id == "ana@example.com"
        assert event.sender_name == "Ana Perez"
        assert event.subject == "Order 42"
        assert event.text == "Where is my order?"
        assert event.message_type is MessageType.TEXT
        assert event.attachments[0].type is MessageType.DOCUMENT

    def test_mailgun_body_fields(self) -> None:
        event = email.map_payload({"sender": "a@b.co", "body-plain": "plain body"}).messages[0]
        assert event.text == "plain body"

    def test_unsubscribe_subject_is_opt_out(self) -> None:
        mapped = email.map_payload({"from": "a@b.co", "subject": "unsubscribe", "text": "x"})
        assert len(mapped.opt_outs) == 1

    def test_event_batch(self) -> None:
        mapped = email.map_payload([
            {"event": "delivered", "sg_message_id": "s1", "email": "a@b.co"},
            {"event": "open", "sg_message_id": "s2"},
            {"event": "bounce", "sg_message_id": "s3", "reason": "mailbox full"},
            {"event": "processed", "sg_message_id": "s4"},
        ])
        assert mapped.messages == []
        assert [(s.provider_message_id, s.status) for s in mapped.statuses] == [
            ("s1", "delivered"), ("s2", "read"), ("s3", "failed"),
        ]
        assert mapped.statuses[2].error == "mailbox full"


class TestGenericMapper:
    def test_single_message(self) -> None:
        mapped = generic.map_payload({
            "connector_id": "crm-7",
            "sender": "lead-1",
            "text": "hello",
            "message_id": "g1",
        })
        assert mapped.native_ids == ["crm-7"]
        assert mapped.messages[0].sender_id == "lead-1"
        assert mapped.messages[0].provider is Provider.GENERIC

    def test_batch_with_statuses(self) -> None:
        mapped = generic.map_payload({
            "connector_id": "crm-7",
            "messages": [{"sender": "a", "text": "1"}, {"sender": "b", "text": "2"}],
            "statuses": [
                {"message_id": "o1", "status": "READ"},
                {"message_id": "o2", "status": "queued"},
            ],
        })
        assert len(mapped.messages) == 2
        assert [(s.provider_message_id, s.status) for s in mapped.statuses] == [("o1", "read")]

    def test_unknown_type_falls_back_to_text(self) -> None:
        event = generic.map_payload({"sender": "a", "text": "x", "type": "sticker"}).messages[0]
        assert event.message_type is MessageType.TEXT
