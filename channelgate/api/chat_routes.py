"""Public chat widget API.

Unauthenticated and session-scoped. Every handler answers 200 with an
``{ok, ...}`` body; failures carry a short ``error`` string for the widget.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from channelgate.channels.base import OutboundMessage
from channelgate.chat.orchestrator import (
    ChannelNotLinkedError,
    ChannelNotVerifiedError,
    ChannelSendError,
)
from channelgate.chat.session_store import SessionNotFoundError
from channelgate.chat.verification import VERIFIABLE_KINDS
from channelgate.models import ChannelKind

if TYPE_CHECKING:
    from channelgate.channels.base import ChannelSender
    from channelgate.chat.orchestrator import ChannelOrchestrator
    from channelgate.chat.rate_limiter import MessageIntervalLimiter
    from channelgate.chat.session_store import (
        ChannelLinkIndex,
        InMemorySessionStore,
        MagicLinkTokens,
    )
    from channelgate.chat.verification import ContactVerificationService
    from channelgate.collaborators import ConversationService, ReplyGenerator
    from channelgate.tasks import BackgroundTaskRunner
    from channelgate.tenancy.resolver import TenantResolver

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 2000
HISTORY_LIMIT = 20
SSE_KEEPALIVE_SECONDS = 15.0
RATE_LIMITED_MESSAGE = "Slow down, please."
EMAIL_CONFIRMATION_NOTICE = "We sent you an email confirmation and opened a support thread."
FALLBACK_REPLY = "Thanks for your message. A member of our team will get back to you shortly."

_EMAIL_RE = re.compile(r".+@.+\..+")


@dataclass
class ChatDependencies:
    store: InMemorySessionStore
    tokens: MagicLinkTokens
    link_index: ChannelLinkIndex
    verification: ContactVerificationService
    orchestrator: ChannelOrchestrator
    rate_limiter: MessageIntervalLimiter
    resolver: TenantResolver
    conversation: ConversationService
    reply_generator: ReplyGenerator
    runner: BackgroundTaskRunner
    email_sender: ChannelSender | None = None


def _fail(error: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error})


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _parse_kind(raw: Any) -> ChannelKind | None:
    try:
        return ChannelKind(str(raw).lower())
    except ValueError:
        return None


async def sse_events(
    store: InMemorySessionStore,
    session_id: str,
    queue: asyncio.Queue[dict[str, Any]],
    keepalive_seconds: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Yield ``:ok``, then one ``data: <json>`` frame per session event."""
    try:
        yield ":ok\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield ":keepalive\n\n"
                continue
            yield f"data: {json.dumps(event)}\n\n"
    finally:
        store.unsubscribe(session_id, queue)


def create_chat_router(deps: ChatDependencies) -> APIRouter:
    """Create the public chat router."""
    router = APIRouter(prefix="/public/chat")
    store = deps.store

    def resolve_tenant(request: Request, body_tenant: Any = None) -> str | None:
        if body_tenant:
            return str(body_tenant)
        header_tenant = request.headers.get("x-tenant-id")
        if header_tenant:
            return header_tenant
        host = request.headers.get("x-tenant-host") or request.headers.get("host")
        return deps.resolver.resolve_host(host)

    async def fan_out(session_id: str, reply: str) -> None:
        outcomes = await deps.orchestrator.send_to_all_channels(session_id, reply)
        failed = [o.channel.value for o in outcomes if not o.ok]
        if failed:
            logger.warning("Reply mirror failed on %s for session %s", failed, session_id)

    @router.post("/start")
    async def start(request: Request) -> JSONResponse:
        body = await _read_json(request)
        tenant_id = resolve_tenant(request, body.get("tenantId"))
        if not tenant_id:
            return _fail("tenant_not_found")
        session = store.create_session(tenant_id)
        return JSONResponse({"ok": True, "sessionId": session.id, "tenantId": tenant_id})

    @router.post("/message")
    async def message(request: Request) -> JSONResponse:
        body = await _read_json(request)
        text = str(body.get("text") or "").strip()
        if not text:
            return _fail("Please provide a message.")

        session_id = str(body.get("sessionId") or "")
        session = store.get(session_id) if session_id else None
        if session is None:
            tenant_id = resolve_tenant(request, body.get("tenantId"))
            if not tenant_id:
                return _fail("tenant_not_found")
            session = store.create_session(tenant_id)

        if not deps.rate_limiter.check(session.id):
            return _fail(RATE_LIMITED_MESSAGE)

        store.append(session.id, "user", text[:MAX_MESSAGE_CHARS])

        reply: str | None = None
        try:
            history = [m.to_dict() for m in store.get_messages(session.id, HISTORY_LIMIT)]
            reply = await deps.reply_generator.generate_reply(session.tenant_id, session.id, history)
        except Exception:
            logger.warning("Reply generation failed for session %s", session.id, exc_info=True)
        reply = reply or FALLBACK_REPLY

        store.append(session.id, "assistant", reply)
        deps.runner.spawn(fan_out(session.id, reply), name=f"chat-fanout:{session.id}")
        return JSONResponse({"ok": True, "sessionId": session.id, "reply": reply})

    @router.get("/history")
    async def history(sessionId: str = "", limit: int = HISTORY_LIMIT) -> JSONResponse:
        if store.get(sessionId) is None:
            return _fail("session_not_found")
        limit = max(1, min(limit, HISTORY_LIMIT))
        messages = [m.to_dict() for m in store.get_messages(sessionId, limit)]
        return JSONResponse({"ok": True, "messages": messages})

    @router.get("/stream")
    async def stream(sessionId: str = "") -> Response:
        if store.get(sessionId) is None:
            return _fail("session_not_found")
        queue = store.subscribe(sessionId)
        return StreamingResponse(
            sse_events(store, sessionId, queue),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @router.get("/whatsapp-link")
    async def whatsapp_link(request: Request, sessionId: str = "", phone: str = "") -> JSONResponse:
        """wa.me deep link that pre-fills the session reference."""
        digits = re.sub(r"\D", "", phone)
        if not digits:
            return _fail("missing_phone")
        text = quote(f"Hello, I would like to continue our chat. Session: {sessionId}")
        return JSONResponse({
            "ok": True,
            "url": f"https://wa.me/{digits}?text={text}",
            "tenantId": resolve_tenant(request),
        })

    @router.post("/email")
    async def email(request: Request) -> JSONResponse:
        body = await _read_json(request)
        session_id = str(body.get("sessionId") or "")
        address = str(body.get("email") or "").strip().lower()
        message_text = str(body.get("message") or "")
        session = store.get(session_id) if session_id else None
        tenant_id = session.tenant_id if session else resolve_tenant(request, body.get("tenantId"))
        if not tenant_id or not address:
            return _fail("missing_tenant_or_email")
        if not _EMAIL_RE.fullmatch(address):
            return _fail("invalid_email")

        try:
            conversation_id = await deps.conversation.link_conversation(tenant_id, session_id, {
                "channel": ChannelKind.EMAIL.value,
                "email": address,
                "message": message_text[:MAX_MESSAGE_CHARS],
            })
        except httpx.HTTPError:
            logger.warning("Email handoff failed for tenant %s", tenant_id, exc_info=True)
            return _fail("conversation_unavailable")
        if session is not None:
            store.link_channel(session.id, ChannelKind.EMAIL, address, verified=True)
            deps.link_index.register(ChannelKind.EMAIL, address, session.id)
            if conversation_id:
                store.link_conversation(session.id, conversation_id)

        if deps.email_sender is not None:
            result = await deps.email_sender.send_message(tenant_id, OutboundMessage(
                recipient_id=address,
                subject="Support request received",
                content=f"Thanks for contacting us.\n\nYour message:\n{message_text}",
            ))
            if not result.ok:
                logger.warning("Confirmation email failed for tenant %s: %s", tenant_id, result.error)

        if session is not None:
            store.append(session.id, "assistant", EMAIL_CONFIRMATION_NOTICE)
        return JSONResponse({
            "ok": True,
            "tenantId": tenant_id,
            "sessionId": session.id if session else None,
            "conversationId": conversation_id,
        })

    @router.post("/magic-link")
    async def magic_link(request: Request) -> JSONResponse:
        body = await _read_json(request)
        session = store.get(str(body.get("sessionId") or ""))
        if session is None:
            return _fail("session_not_found")
        address = str(body.get("email") or "").strip().lower()
        if not address:
            linked = session.channels.get(ChannelKind.EMAIL)
            address = linked.contact if linked else ""
        token = deps.tokens.issue(session.id, session.tenant_id, address)
        return JSONResponse({"ok": True, "token": token})

    @router.post("/resume")
    async def resume(request: Request) -> JSONResponse:
        body = await _read_json(request)
        info = deps.tokens.verify(str(body.get("token") or ""))
        if info is None:
            return _fail("invalid_token")
        return JSONResponse({"ok": True, "sessionId": info.session_id, "tenantId": info.tenant_id})

    @router.post("/link-channel")
    async def link_channel(request: Request) -> JSONResponse:
        body = await _read_json(request)
        session_id = str(body.get("sessionId") or "")
        contact = str(body.get("contact") or "").strip()
        kind = _parse_kind(body.get("channel"))
        if not session_id or not contact or body.get("channel") is None:
            return _fail("missing_fields")
        if kind is None:
            return _fail("invalid_channel")

        if kind in VERIFIABLE_KINDS:
            result = await deps.verification.request_verification(session_id, kind, contact)
            return JSONResponse({**result.to_response(), "requiresVerification": True})

        if store.get(session_id) is None:
            return _fail("session_not_found")
        store.link_channel(session_id, kind, contact.lower(), verified=True)
        deps.link_index.register(kind, contact, session_id)
        return JSONResponse({"ok": True, "requiresVerification": False})

    @router.post("/verify-contact")
    async def verify_contact(request: Request) -> JSONResponse:
        body = await _read_json(request)
        session_id = str(body.get("sessionId") or "")
        code = str(body.get("code") or "")
        kind = _parse_kind(body.get("channel"))
        if not session_id or not code or kind is None:
            return _fail("missing_fields")
        result = deps.verification.verify_code(session_id, kind, code)
        if not result.ok:
            return _fail(result.error or "invalid_code")
        return JSONResponse({"ok": True, "verified": True})

    @router.get("/channel-status")
    async def channel_status(sessionId: str = "") -> JSONResponse:
        if not sessionId:
            return _fail("missing_fields")
        if store.get(sessionId) is None:
            return _fail("session_not_found")
        return JSONResponse({
            "ok": True,
            "channels": deps.verification.get_verification_status(sessionId),
        })

    @router.post("/send-to-channel")
    async def send_to_channel(request: Request) -> JSONResponse:
        body = await _read_json(request)
        session_id = str(body.get("sessionId") or "")
        text = str(body.get("message") or "").strip()
        kind = _parse_kind(body.get("channel"))
        if not session_id or not text or kind is None:
            return _fail("missing_fields")
        try:
            outcome = await deps.orchestrator.send_to_specific_channel(session_id, kind, text)
        except SessionNotFoundError:
            return _fail("session_not_found")
        except ChannelNotLinkedError:
            return _fail("channel_not_linked")
        except ChannelNotVerifiedError:
            return _fail("channel_not_verified")
        except ChannelSendError as exc:
            return _fail(str(exc))
        return JSONResponse({"ok": True, "channel": kind.value, "messageId": outcome.message_id})

    return router
