"""Process-local state for the public chat widget.

This module provides:
- The SessionStore protocol and its in-memory implementation
- ChannelLinkIndex, mapping verified contacts back to sessions
- MagicLinkTokens, HMAC-signed resume links

State lives in this process only. Sessions idle for longer than the TTL
are evicted lazily on access and by ``cleanup_expired()``.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import re
import time
from collections.abc import Callable
from typing import Any, Protocol

from channelgate.chat.models import ChatMessage, LinkedChannel, MagicLinkInfo, PublicChatSession
from channelgate.models import ChannelKind

logger = logging.getLogger(__name__)

_SUBSCRIBER_QUEUE_SIZE = 100


class SessionNotFoundError(Exception):
    """Raised when a chat session does not exist or has expired."""


class SessionStore(Protocol):
    def get(self, session_id: str) -> PublicChatSession | None: ...

    def put(self, session: PublicChatSession) -> None: ...

    def append(
        self,
        session_id: str,
        role: str,
        text: str,
        channel: str | None = None,
        delivery_status: str | None = None,
    ) -> ChatMessage | None: ...


class InMemorySessionStore:
    """Dict-backed session store with idle TTL and SSE subscribers."""

    DEFAULT_TTL_SECONDS = 86_400  # 24 hours

    def __init__(
        self,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds or self.DEFAULT_TTL_SECONDS
        self._clock = clock
        self._sessions: dict[str, PublicChatSession] = {}
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._eviction_listeners: list[Callable[[str], None]] = []
        self._contact_listeners: list[Callable[[ChannelKind, str, str], None]] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def on_evict(self, listener: Callable[[str], None]) -> None:
        self._eviction_listeners.append(listener)

    def on_contact_change(self, listener: Callable[[ChannelKind, str, str], None]) -> None:
        """Call ``listener(kind, old_contact, session_id)`` when a linked contact is replaced."""
        self._contact_listeners.append(listener)

    # --- SessionStore protocol ---

    def get(self, session_id: str) -> PublicChatSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session):
            self._evict(session_id)
            return None
        return session

    def put(self, session: PublicChatSession) -> None:
        session.last_activity = self._clock()
        self._sessions[session.id] = session

    def append(
        self,
        session_id: str,
        role: str,
        text: str,
        channel: str | None = None,
        delivery_status: str | None = None,
    ) -> ChatMessage | None:
        session = self.get(session_id)
        if session is None:
            return None
        message = ChatMessage(
            role=role,
            text=text,
            timestamp=self._clock(),
            channel=channel,
            delivery_status=delivery_status,
        )
        session.messages.append(message)
        session.last_activity = message.timestamp
        self.broadcast(session_id, {"type": "message", "message": message.to_dict()})
        return message

    # --- Session operations ---

    def create_session(self, tenant_id: str) -> PublicChatSession:
        now = self._clock()
        session = PublicChatSession(tenant_id=tenant_id, created_at=now, last_activity=now)
        self._sessions[session.id] = session
        return session

    def require(self, session_id: str) -> PublicChatSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_messages(self, session_id: str, limit: int = 20) -> list[ChatMessage]:
        session = self.get(session_id)
        if session is None:
            return []
        return session.messages[-limit:] if limit > 0 else []

    def get_tenant(self, session_id: str) -> str | None:
        session = self.get(session_id)
        return session.tenant_id if session else None

    def link_channel(
        self,
        session_id: str,
        kind: ChannelKind,
        contact: str,
        verified: bool = False,
    ) -> LinkedChannel:
        """Attach ``contact`` to the session, resetting verification if it changed."""
        session = self.require(session_id)
        linked = session.channels.get(kind)
        if linked is None:
            linked = LinkedChannel(kind=kind, contact=contact, linked_at=self._clock())
            session.channels[kind] = linked
        elif linked.contact != contact:
            previous = linked.contact
            linked.contact = contact
            linked.verified = False
            linked.linked_at = self._clock()
            linked.verification_code = None
            linked.code_issued_at = None
            for listener in self._contact_listeners:
                listener(kind, previous, session_id)
        if verified:
            linked.verified = True
        session.last_activity = self._clock()
        return linked

    def link_conversation(self, session_id: str, conversation_id: str) -> None:
        session = self.require(session_id)
        session.conversation_id = conversation_id

    # --- Server-Sent Events subscribers ---

    def subscribe(self, session_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(session_id, set()).add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def broadcast(self, session_id: str, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(session_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping SSE event for slow subscriber on session %s", session_id)

    # --- Eviction ---

    def cleanup_expired(self) -> int:
        expired = [sid for sid, s in self._sessions.items() if self._is_expired(s)]
        for session_id in expired:
            self._evict(session_id)
        if expired:
            logger.info("Evicted %d idle chat sessions", len(expired))
        return len(expired)

    def _is_expired(self, session: PublicChatSession) -> bool:
        return self._clock() - session.last_activity > self._ttl_seconds

    def _evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._subscribers.pop(session_id, None)
        for listener in self._eviction_listeners:
            listener(session_id)


def normalize_contact(kind: ChannelKind, contact: str) -> str:
    """Canonical form of a contact: phone digits, lowercase handle or address."""
    if kind is ChannelKind.WHATSAPP:
        return re.sub(r"\D", "", contact)
    value = contact.strip().lower()
    if kind is ChannelKind.INSTAGRAM:
        value = value.lstrip("@")
    return value


class ChannelLinkIndex:
    """Maps verified external contacts to the chat session that claimed them."""

    def __init__(self) -> None:
        self._links: dict[tuple[ChannelKind, str], str] = {}

    def register(self, kind: ChannelKind, contact: str, session_id: str) -> None:
        key = (kind, normalize_contact(kind, contact))
        if key[1]:
            self._links[key] = session_id

    def unregister(self, kind: ChannelKind, contact: str, session_id: str) -> None:
        """Drop the mapping for ``contact`` if ``session_id`` still owns it."""
        key = (kind, normalize_contact(kind, contact))
        if self._links.get(key) == session_id:
            del self._links[key]

    def find_session(self, kind: ChannelKind, contact: str) -> str | None:
        return self._links.get((kind, normalize_contact(kind, contact)))

    def forget_session(self, session_id: str) -> None:
        for key in [k for k, sid in self._links.items() if sid == session_id]:
            del self._links[key]


class MagicLinkTokens:
    """Issues and verifies HMAC-signed session resume tokens.

    Token format: ``<payload_b64>.<signature_b64>`` where the payload is
    ``{session_id, tenant_id, email, exp}``.
    """

    DEFAULT_TTL_SECONDS = 86_400

    def __init__(
        self,
        secret: str,
        store: InMemorySessionStore,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self._store = store
        self._ttl_seconds = ttl_seconds or self.DEFAULT_TTL_SECONDS
        self._clock = clock

    def issue(self, session_id: str, tenant_id: str, email: str) -> str:
        payload = {
            "session_id": session_id,
            "tenant_id": tenant_id,
            "email": email,
            "exp": int(self._clock()) + self._ttl_seconds,
        }
        payload_json = json.dumps(payload, sort_keys=True)
        payload_b64 = base64.urlsafe_b64encode(payload_json.encode()).decode().rstrip("=")
        signature_b64 = self._sign(payload_b64)
        return f"{payload_b64}.{signature_b64}"

    def verify(self, token: str) -> MagicLinkInfo | None:
        """Return the token's claims, or None if invalid, expired or orphaned."""
        parts = token.split(".")
        if len(parts) != 2 or not all(parts):
            return None
        payload_b64, signature_b64 = parts

        if not hmac.compare_digest(signature_b64, self._sign(payload_b64)):
            return None

        try:
            payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=="))
            info = MagicLinkInfo(
                session_id=payload["session_id"],
                tenant_id=payload["tenant_id"],
                email=payload["email"],
                expires_at=int(payload["exp"]),
            )
        except (ValueError, KeyError, TypeError):
            return None

        if self._clock() > info.expires_at:
            return None
        if self._store.get(info.session_id) is None:
            return None
        return info

    def _sign(self, data: str) -> str:
        signature = hmac.new(self._secret, data.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(signature).decode().rstrip("=")
