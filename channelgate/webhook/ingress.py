"""Inbound provider webhook processing.

Pipeline stages, strictly sequential up to forwarding:
1. Signature check against the provider secret
2. JSON parse
3. Map the provider envelope to canonical events
4. Resolve the owning tenant
5. Forward statuses, opt-outs and messages to the conversation service
6. Mirror messages into a linked public chat session
7. Schedule enrichment and the automation trigger (never awaited)

Business rejections come back as ``{success: false, error}``. Nothing here
turns into a 5xx, since providers retry those indefinitely.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from channelgate import metrics
from channelgate.models import AuditEvent, AuditEventType, ChannelKind, Provider, RiskLevel
from channelgate.tenancy.resolver import ProviderContext
from channelgate.webhook import email, generic, instagram, whatsapp
from channelgate.webhook.canonical import enrichment_jobs
from channelgate.webhook.models import (
    CanonicalMessageEvent,
    EnrichmentJob,
    EnrichmentKind,
    IngressResult,
    MappedPayload,
)
from channelgate.webhook.signature import SignatureVerifier

if TYPE_CHECKING:
    from channelgate.audit.logger import AuditLogger
    from channelgate.chat.session_store import ChannelLinkIndex, SessionStore
    from channelgate.collaborators import (
        AutomationService,
        ConversationService,
        MediaAnalysisService,
        TranscriptionService,
    )
    from channelgate.tasks import BackgroundTaskRunner
    from channelgate.tenancy.resolver import TenantResolver

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED_EVENT = "conversation.message.received"

_META_PROVIDERS = {Provider.WHATSAPP, Provider.INSTAGRAM}
_EXPLICIT_TENANT_HEADERS = ("x-tenant-id", "x-tenant")
_MIRRORED_KINDS = {
    Provider.WHATSAPP: ChannelKind.WHATSAPP,
    Provider.INSTAGRAM: ChannelKind.INSTAGRAM,
    Provider.EMAIL: ChannelKind.EMAIL,
}
_METRIC_STATUSES = {"invalid_signature", "tenant_not_found"}


def signature_header_name(provider: Provider) -> str:
    return "x-hub-signature-256" if provider in _META_PROVIDERS else "x-signature"


class WebhookIngressProcessor:
    """Runs one inbound provider webhook through the ingress pipeline."""

    def __init__(
        self,
        verifiers: Mapping[Provider, SignatureVerifier],
        resolver: TenantResolver,
        conversation: ConversationService,
        runner: BackgroundTaskRunner,
        automation: AutomationService | None = None,
        transcription: TranscriptionService | None = None,
        media_analysis: MediaAnalysisService | None = None,
        session_store: SessionStore | None = None,
        link_index: ChannelLinkIndex | None = None,
        audit_logger: AuditLogger | None = None,
        graph_api_base: str = whatsapp.DEFAULT_GRAPH_BASE,
    ) -> None:
        self._verifiers = verifiers
        self._resolver = resolver
        self._conversation = conversation
        self._runner = runner
        self._automation = automation
        self._transcription = transcription
        self._media_analysis = media_analysis
        self._sessions = session_store
        self._links = link_index
        self._audit = audit_logger
        self._mappers: dict[Provider, Callable[[Any], MappedPayload]] = {
            Provider.WHATSAPP: lambda p: whatsapp.map_payload(p, graph_api_base),
            Provider.INSTAGRAM: instagram.map_payload,
            Provider.EMAIL: email.map_payload,
            Provider.GENERIC: generic.map_payload,
        }

    async def process(
        self,
        provider: Provider,
        raw_body: bytes,
        headers: Mapping[str, str],
        host: str | None = None,
        status_only: bool = False,
        source_ip: str | None = None,
    ) -> IngressResult:
        """Process one webhook request. Never raises."""
        start = metrics.monotonic()
        try:
            result = await self._process(
                provider, raw_body, headers, host, status_only, source_ip,
            )
            label = "ok" if result.success else (
                result.error if result.error in _METRIC_STATUSES else "error"
            )
        except Exception as exc:
            logger.exception("Unhandled error processing %s webhook", provider.value)
            result = IngressResult(success=False, error=str(exc) or type(exc).__name__)
            label = "exception"
        metrics.record_inbound(provider.value, label, metrics.duration_ms(start))
        return result

    async def _process(
        self,
        provider: Provider,
        raw_body: bytes,
        headers: Mapping[str, str],
        host: str | None,
        status_only: bool,
        source_ip: str | None,
    ) -> IngressResult:
        lowered = {k.lower(): v for k, v in headers.items()}

        # Stage 1: signature
        verifier = self._verifiers.get(provider)
        if verifier is not None and not verifier.verify(
            lowered.get(signature_header_name(provider)), raw_body,
        ):
            logger.warning("Rejected %s webhook: invalid signature", provider.value)
            self._log_audit(
                AuditEventType.WEBHOOK_REJECTED, "signature_check", "rejected",
                RiskLevel.HIGH, source_ip, None, {"provider": provider.value},
            )
            return IngressResult(success=False, error="invalid_signature")

        # Stage 2: parse
        try:
            payload = json.loads(raw_body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(
                "Rejected %s webhook: invalid JSON (%d bytes)", provider.value, len(raw_body),
            )
            return IngressResult(success=False, error="invalid_payload")

        # Stage 3: map
        mapped = self._mappers[provider](payload)

        # Stage 4: tenant
        explicit = next((lowered[h] for h in _EXPLICIT_TENANT_HEADERS if lowered.get(h)), None)
        if explicit is None and isinstance(payload, dict):
            body_tenant = payload.get("tenantId")
            explicit = str(body_tenant) if body_tenant else None
        tenant_id = self._resolver.resolve(ProviderContext(
            provider=provider.value,
            explicit_tenant_id=explicit,
            native_ids=mapped.native_ids,
            host=host,
        ))
        if tenant_id is None:
            self._log_audit(
                AuditEventType.WEBHOOK_REJECTED, "tenant_resolve", "rejected",
                RiskLevel.MEDIUM, source_ip, None,
                {"provider": provider.value, "native_ids": mapped.native_ids},
            )
            return IngressResult(success=False, error="tenant_not_found")

        # Stage 5: forward
        for update in mapped.statuses:
            update.tenant_id = tenant_id
            await self._conversation.record_status_update(update)
        for signal in mapped.opt_outs:
            signal.tenant_id = tenant_id
            await self._conversation.record_opt_out(signal)

        forwarded = 0
        if not status_only:
            for event in mapped.messages:
                event.tenant_id = tenant_id
                await self._conversation.record_inbound_message(event)
                forwarded += 1
                self._mirror(event)
                self._schedule_side_effects(event)

        logger.info(
            "Processed %s webhook for tenant %s (%d bytes, %d messages, %d statuses)",
            provider.value, tenant_id, len(raw_body), forwarded, len(mapped.statuses),
        )
        self._log_audit(
            AuditEventType.WEBHOOK_RECEIVED, "ingress", "success", RiskLevel.INFO,
            source_ip, tenant_id,
            {"provider": provider.value, "messages": forwarded, "statuses": len(mapped.statuses)},
        )
        return IngressResult(
            success=True,
            tenant_id=tenant_id,
            forwarded=forwarded,
            statuses=len(mapped.statuses),
        )

    def _mirror(self, event: CanonicalMessageEvent) -> None:
        kind = _MIRRORED_KINDS.get(event.provider)
        if kind is None or self._links is None or self._sessions is None:
            return
        session_id = self._links.find_session(kind, event.sender_id)
        if session_id is None:
            return
        self._sessions.append(session_id, "assistant", event.text, channel=kind.value)

    def _schedule_side_effects(self, event: CanonicalMessageEvent) -> None:
        msg_ref = event.provider_message_id or event.sender_id
        for job in enrichment_jobs(event):
            self._runner.spawn(
                self._run_enrichment(event, job), name=f"enrich:{job.kind.value}:{msg_ref}",
            )
        if self._automation is not None:
            self._runner.spawn(self._trigger_automation(event), name=f"automation:{msg_ref}")

    async def _run_enrichment(self, event: CanonicalMessageEvent, job: EnrichmentJob) -> None:
        tenant_id = event.tenant_id or ""
        url = job.attachment.url
        try:
            if job.kind is EnrichmentKind.TRANSCRIPTION:
                if self._transcription is None:
                    return
                content = await self._transcription.transcribe_from_url(url, tenant_id)
            elif job.kind is EnrichmentKind.IMAGE_ANALYSIS:
                if self._media_analysis is None:
                    return
                content = await self._media_analysis.analyze_image_from_url(url, tenant_id)
            else:
                if self._media_analysis is None:
                    return
                content = await self._media_analysis.analyze_pdf_from_url(url, tenant_id)
            if content:
                await self._conversation.attach_enrichment(
                    tenant_id, event.provider_message_id, job.kind.value, content,
                )
        except Exception:
            logger.warning(
                "Enrichment %s failed for %s message %s",
                job.kind.value, event.provider.value, event.provider_message_id,
                exc_info=True,
            )

    async def _trigger_automation(self, event: CanonicalMessageEvent) -> None:
        assert self._automation is not None
        try:
            await self._automation.execute_workflow_by_trigger("event", {
                "eventType": MESSAGE_RECEIVED_EVENT,
                "tenantId": event.tenant_id,
                "channel": event.provider.value,
                "senderId": event.sender_id,
                "messageId": event.provider_message_id,
                "content": event.text,
                "timestamp": event.timestamp,
            })
        except Exception:
            logger.warning(
                "Automation trigger failed for %s message %s",
                event.provider.value, event.provider_message_id,
                exc_info=True,
            )

    def _log_audit(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        source_ip: str | None,
        tenant_id: str | None,
        details: dict[str, object],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            action=action,
            result=result,
            risk_level=risk_level,
            source_ip=source_ip,
            tenant_id=tenant_id,
            details=details,
        ))
