"""Tests for mirroring widget messages to linked channels."""

from __future__ import annotations

import pytest

from channelgate.channels.base import OutboundMessage, SendResult
from channelgate.chat.orchestrator import (
    ChannelNotLinkedError,
    ChannelNotVerifiedError,
    ChannelOrchestrator,
    ChannelSendError,
)
from channelgate.chat.session_store import InMemorySessionStore, SessionNotFoundError
from channelgate.models import ChannelKind
from tests.conftest import FakeSender


class _ExplodingSender:
    channel = "instagram"

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult:
        raise RuntimeError("socket closed")


def _make_store() -> tuple[InMemorySessionStore, str]:
    store = InMemorySessionStore()
    return store, store.create_session("T1").id


@pytest.mark.asyncio
async def test_send_to_all_skips_unverified() -> None:
    store, sid = _make_store()
    wa, ig, mail = FakeSender("whatsapp"), FakeSender("instagram"), FakeSender("email")
    store.link_channel(sid, ChannelKind.WHATSAPP, "+15550001", verified=True)
    store.link_channel(sid, ChannelKind.INSTAGRAM, "handle")
    store.link_channel(sid, ChannelKind.EMAIL, "a@b.co")
    orchestrator = ChannelOrchestrator(store, {
        ChannelKind.WHATSAPP: wa, ChannelKind.INSTAGRAM: ig, ChannelKind.EMAIL: mail,
    })

    outcomes = await orchestrator.send_to_all_channels(sid, "reply")

    assert {o.channel for o in outcomes} == {ChannelKind.WHATSAPP, ChannelKind.EMAIL}
    assert all(o.ok for o in outcomes)
    assert ig.sent == []
    assert wa.sent[0][1].recipient_id == "+15550001"


@pytest.mark.asyncio
async def test_send_to_all_isolates_failures() -> None:
    store, sid = _make_store()
    store.link_channel(sid, ChannelKind.INSTAGRAM, "handle", verified=True)
    store.link_channel(sid, ChannelKind.EMAIL, "a@b.co")
    mail = FakeSender("email")
    orchestrator = ChannelOrchestrator(store, {
        ChannelKind.INSTAGRAM: _ExplodingSender(), ChannelKind.EMAIL: mail,
    })

    outcomes = {o.channel: o for o in await orchestrator.send_to_all_channels(sid, "reply")}

    assert outcomes[ChannelKind.INSTAGRAM].ok is False
    assert outcomes[ChannelKind.INSTAGRAM].error == "socket closed"
    assert outcomes[ChannelKind.EMAIL].ok is True


@pytest.mark.asyncio
async def test_send_to_all_unknown_session_is_empty() -> None:
    store, _ = _make_store()
    assert await ChannelOrchestrator(store, {}).send_to_all_channels("nope", "x") == []


@pytest.mark.asyncio
async def test_send_to_specific_records_message() -> None:
    store, sid = _make_store()
    store.link_channel(sid, ChannelKind.WHATSAPP, "+15550001", verified=True)
    orchestrator = ChannelOrchestrator(store, {ChannelKind.WHATSAPP: FakeSender("whatsapp")})

    outcome = await orchestrator.send_to_specific_channel(sid, ChannelKind.WHATSAPP, "hi")

    assert outcome.message_id == "whatsapp-msg-1"
    last = store.get_messages(sid)[-1]
    assert last.channel == "whatsapp"
    assert last.delivery_status == "sent"


@pytest.mark.asyncio
async def test_send_to_specific_errors() -> None:
    store, sid = _make_store()
    store.link_channel(sid, ChannelKind.INSTAGRAM, "handle")
    failing = FakeSender("email", result=SendResult.failed("SMTP error: 550"))
    store.link_channel(sid, ChannelKind.EMAIL, "a@b.co")
    orchestrator = ChannelOrchestrator(store, {
        ChannelKind.INSTAGRAM: FakeSender("instagram"), ChannelKind.EMAIL: failing,
    })

    with pytest.raises(SessionNotFoundError):
        await orchestrator.send_to_specific_channel("nope", ChannelKind.EMAIL, "x")
    with pytest.raises(ChannelNotLinkedError):
        await orchestrator.send_to_specific_channel(sid, ChannelKind.WHATSAPP, "x")
    with pytest.raises(ChannelNotVerifiedError):
        await orchestrator.send_to_specific_channel(sid, ChannelKind.INSTAGRAM, "x")
    with pytest.raises(ChannelSendError, match="SMTP error"):
        await orchestrator.send_to_specific_channel(sid, ChannelKind.EMAIL, "x")
    assert store.get_messages(sid)[-1].delivery_status == "failed"


@pytest.mark.asyncio
async def test_send_to_specific_unconfigured_sender() -> None:
    store, sid = _make_store()
    store.link_channel(sid, ChannelKind.EMAIL, "a@b.co")
    orchestrator = ChannelOrchestrator(store, {})
    with pytest.raises(ChannelSendError, match="email_not_configured"):
        await orchestrator.send_to_specific_channel(sid, ChannelKind.EMAIL, "x")
