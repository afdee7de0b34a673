"""One-time code verification gating WhatsApp and Instagram links.

Per (session, channel kind): ``unlinked -> code-sent -> verified``.
A wrong code leaves the channel in ``code-sent`` and counts as an attempt;
the pending code stays valid until its TTL runs out. Once the attempt budget
is spent the next request is refused with ``max_attempts_exceeded``.
"""

from __future__ import annotations

import hmac
import logging
import math
import secrets
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from channelgate.channels.base import ChannelSender, OutboundMessage
from channelgate.chat.models import VerificationResult
from channelgate.models import AuditEvent, AuditEventType, ChannelKind, RiskLevel

if TYPE_CHECKING:
    from channelgate.audit.logger import AuditLogger
    from channelgate.chat.session_store import ChannelLinkIndex, InMemorySessionStore

logger = logging.getLogger(__name__)

VERIFIABLE_KINDS = frozenset({ChannelKind.WHATSAPP, ChannelKind.INSTAGRAM})

SESSION_NOT_FOUND = "session_not_found"
UNSUPPORTED_CHANNEL = "unsupported_channel"
MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
INVALID_CODE = "invalid_code"


def generate_code() -> str:
    """Uniformly random 6-digit code, zero-padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


class ContactVerificationService:
    def __init__(
        self,
        store: InMemorySessionStore,
        senders: Mapping[ChannelKind, ChannelSender],
        link_index: ChannelLinkIndex,
        max_attempts: int = 3,
        rate_limit_seconds: int = 60,
        code_ttl_seconds: int = 600,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._senders = senders
        self._links = link_index
        self._max_attempts = max_attempts
        self._rate_limit_seconds = rate_limit_seconds
        self._code_ttl_seconds = code_ttl_seconds
        self._audit = audit_logger
        self._clock = clock

    async def request_verification(
        self, session_id: str, kind: ChannelKind, contact: str,
    ) -> VerificationResult:
        session = self._store.get(session_id)
        if session is None:
            return VerificationResult(ok=False, error=SESSION_NOT_FOUND)
        if kind not in VERIFIABLE_KINDS:
            return VerificationResult(ok=False, error=UNSUPPORTED_CHANNEL)

        now = self._clock()
        linked = session.channels.get(kind)
        if linked is not None:
            if linked.verification_attempts >= self._max_attempts:
                return VerificationResult(ok=False, error=MAX_ATTEMPTS_EXCEEDED)
            last = linked.last_verification_request
            if last is not None and now - last < self._rate_limit_seconds:
                wait = math.ceil(self._rate_limit_seconds - (now - last))
                return VerificationResult(ok=False, error=f"rate_limited: retry in {wait}s")

        code = generate_code()
        linked = self._store.link_channel(session_id, kind, contact)
        if linked.verified:
            self._links.unregister(kind, linked.contact, session_id)
        linked.verified = False
        linked.verification_code = code
        linked.code_issued_at = now
        linked.verification_attempts += 1
        linked.last_verification_request = now

        sender = self._senders.get(kind)
        if sender is None:
            return VerificationResult(ok=False, error=f"{kind.value}_not_configured")
        result = await sender.send_message(session.tenant_id, OutboundMessage(
            recipient_id=contact,
            content=f"Your verification code is {code}",
        ))
        self._log_audit(
            AuditEventType.VERIFICATION_REQUESTED,
            "success" if result.ok else "failure",
            session.tenant_id,
            {"session_id": session_id, "channel": kind.value, "attempt": linked.verification_attempts},
        )
        if not result.ok:
            logger.warning(
                "Verification code send failed for session %s via %s: %s",
                session_id, kind.value, result.error,
            )
            return VerificationResult(ok=False, error=result.error or "send_failed")
        return VerificationResult(ok=True)

    def verify_code(self, session_id: str, kind: ChannelKind, code: str) -> VerificationResult:
        session = self._store.get(session_id)
        if session is None:
            return VerificationResult(ok=False, error=SESSION_NOT_FOUND)
        if kind not in VERIFIABLE_KINDS:
            return VerificationResult(ok=False, error=UNSUPPORTED_CHANNEL)

        linked = session.channels.get(kind)
        if linked is None or linked.verification_code is None:
            return VerificationResult(ok=False, error=INVALID_CODE)

        expired = (
            linked.code_issued_at is not None
            and self._clock() - linked.code_issued_at > self._code_ttl_seconds
        )
        if expired or not hmac.compare_digest(linked.verification_code, code.strip()):
            linked.verification_attempts += 1
            if expired:
                linked.verification_code = None
                linked.code_issued_at = None
            self._log_audit(
                AuditEventType.VERIFICATION_FAILED, "failure", session.tenant_id,
                {"session_id": session_id, "channel": kind.value, "expired": expired},
            )
            return VerificationResult(ok=False, error=INVALID_CODE)

        linked.verified = True
        linked.verification_code = None
        linked.code_issued_at = None
        self._links.register(kind, linked.contact, session_id)
        self._store.broadcast(session_id, {"type": "channel.verified", "channel": kind.value})
        self._log_audit(
            AuditEventType.VERIFICATION_SUCCEEDED, "success", session.tenant_id,
            {"session_id": session_id, "channel": kind.value},
        )
        logger.info("Verified %s contact for session %s", kind.value, session_id)
        return VerificationResult(ok=True)

    def get_verification_status(self, session_id: str) -> dict[str, dict[str, Any]]:
        session = self._store.get(session_id)
        if session is None:
            return {}
        status: dict[str, dict[str, Any]] = {}
        for kind in ChannelKind:
            linked = session.channels.get(kind)
            if linked is None:
                status[kind.value] = {"linked": False}
                continue
            entry: dict[str, Any] = {
                "linked": True,
                "verified": linked.verified,
                "contact": linked.contact,
            }
            if kind in VERIFIABLE_KINDS:
                entry["attemptsLeft"] = max(0, self._max_attempts - linked.verification_attempts)
            status[kind.value] = entry
        return status

    def _log_audit(
        self,
        event_type: AuditEventType,
        result: str,
        tenant_id: str,
        details: dict[str, object],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            tenant_id=tenant_id,
            action="contact_verification",
            result=result,
            risk_level=RiskLevel.INFO if result == "success" else RiskLevel.LOW,
            details=details,
        ))
