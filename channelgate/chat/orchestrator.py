"""Mirror widget messages to a session's linked external channels.

WhatsApp and Instagram are used only once verified. Email needs only a
linked address, since it comes from an explicit email submission.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from channelgate.channels.base import ChannelSender, OutboundMessage, SendResult
from channelgate.chat.models import ChannelSendOutcome, LinkedChannel, PublicChatSession
from channelgate.chat.session_store import SessionNotFoundError
from channelgate.models import ChannelKind

if TYPE_CHECKING:
    from channelgate.chat.session_store import InMemorySessionStore

logger = logging.getLogger(__name__)


class ChannelNotLinkedError(Exception):
    """Raised when a session has no contact for the requested channel."""


class ChannelNotVerifiedError(Exception):
    """Raised when a channel that requires verification is not verified."""


class ChannelSendError(Exception):
    """Raised when the native sender reports a failure."""


def is_sendable(linked: LinkedChannel) -> bool:
    return linked.kind is ChannelKind.EMAIL or linked.verified


class ChannelOrchestrator:
    def __init__(
        self,
        store: InMemorySessionStore,
        senders: Mapping[ChannelKind, ChannelSender],
    ) -> None:
        self._store = store
        self._senders = senders

    async def send_to_all_channels(
        self, session_id: str, message: str,
    ) -> list[ChannelSendOutcome]:
        """Send to every sendable channel concurrently. Never raises for a channel."""
        session = self._store.get(session_id)
        if session is None:
            return []

        targets = [
            linked for linked in session.channels.values()
            if is_sendable(linked) and linked.kind in self._senders
        ]
        if not targets:
            return []

        results = await asyncio.gather(
            *(self._send(session, linked, message) for linked in targets),
            return_exceptions=True,
        )
        outcomes: list[ChannelSendOutcome] = []
        for linked, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Fan-out to %s failed for session %s: %s",
                    linked.kind.value, session_id, result,
                )
                outcomes.append(ChannelSendOutcome(linked.kind, ok=False, error=str(result)))
            elif not result.ok:
                logger.warning(
                    "Fan-out to %s failed for session %s: %s",
                    linked.kind.value, session_id, result.error,
                )
                outcomes.append(ChannelSendOutcome(linked.kind, ok=False, error=result.error))
            else:
                outcomes.append(ChannelSendOutcome(
                    linked.kind, ok=True, message_id=result.message_id,
                ))
        return outcomes

    async def send_to_specific_channel(
        self, session_id: str, kind: ChannelKind, message: str,
    ) -> ChannelSendOutcome:
        """Send to one channel, raising if it cannot be used or the send fails."""
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        linked = session.channels.get(kind)
        if linked is None:
            raise ChannelNotLinkedError(f"{kind.value} is not linked")
        if not is_sendable(linked):
            raise ChannelNotVerifiedError(f"{kind.value} is not verified")
        if kind not in self._senders:
            raise ChannelSendError(f"{kind.value}_not_configured")

        result = await self._send(session, linked, message)
        delivery_status = "sent" if result.ok else "failed"
        self._store.append(
            session_id, "assistant", message, channel=kind.value, delivery_status=delivery_status,
        )
        if not result.ok:
            raise ChannelSendError(result.error or "send_failed")
        return ChannelSendOutcome(kind, ok=True, message_id=result.message_id)

    async def _send(
        self, session: PublicChatSession, linked: LinkedChannel, message: str,
    ) -> SendResult:
        sender = self._senders[linked.kind]
        return await sender.send_message(session.tenant_id, OutboundMessage(
            recipient_id=linked.contact,
            content=message,
        ))
