"""FastAPI application wiring for the channel gateway."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from channelgate.api.admin_routes import create_admin_router
from channelgate.api.auth_middleware import AuthMiddleware
from channelgate.api.chat_routes import ChatDependencies, create_chat_router
from channelgate.api.webhook_routes import create_webhook_router
from channelgate.audit.logger import AuditLogger
from channelgate.channels.base import ChannelSender
from channelgate.channels.email import EmailSender
from channelgate.channels.instagram import InstagramSender
from channelgate.channels.whatsapp import WhatsAppSender
from channelgate.chat.orchestrator import ChannelOrchestrator
from channelgate.chat.rate_limiter import MessageIntervalLimiter
from channelgate.chat.session_store import ChannelLinkIndex, InMemorySessionStore, MagicLinkTokens
from channelgate.chat.verification import ContactVerificationService
from channelgate.collaborators import (
    AutomationService,
    ConversationService,
    CoreServicesClient,
    MediaAnalysisService,
    ReplyGenerator,
    TranscriptionService,
)
from channelgate.config import GatewayConfig
from channelgate.models import ChannelKind, Provider
from channelgate.outbound.dispatcher import OutboundWebhookDispatcher
from channelgate.outbound.repository import DeliveryRepository, EndpointRepository
from channelgate.storage.db import GatewayDB
from channelgate.tasks import BackgroundTaskRunner
from channelgate.tenancy import TenantDirectory, TenantResolver
from channelgate.webhook.ingress import WebhookIngressProcessor
from channelgate.webhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    config = GatewayConfig.from_env()
    audit_logger = AuditLogger.from_env(config.audit_log_path) if config.audit_log_path else None
    return create_app(config, audit_logger=audit_logger)


def build_senders(
    config: GatewayConfig, directory: TenantDirectory | None = None,
) -> dict[ChannelKind, ChannelSender]:
    return {
        ChannelKind.WHATSAPP: WhatsAppSender(
            config.whatsapp_phone_number_id,
            config.whatsapp_access_token,
            api_base=config.graph_api_base,
            directory=directory,
        ),
        ChannelKind.INSTAGRAM: InstagramSender(
            config.instagram_access_token,
            api_base=config.graph_api_base,
            directory=directory,
        ),
        ChannelKind.EMAIL: EmailSender(
            config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_user,
            password=config.smtp_password,
            from_address=config.smtp_from,
        ),
    }


async def _cleanup_sessions(store: InMemorySessionStore, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        store.cleanup_expired()


def create_app(
    config: GatewayConfig,
    *,
    db: GatewayDB | None = None,
    conversation: ConversationService | None = None,
    automation: AutomationService | None = None,
    transcription: TranscriptionService | None = None,
    media_analysis: MediaAnalysisService | None = None,
    reply_generator: ReplyGenerator | None = None,
    senders: Mapping[ChannelKind, ChannelSender] | None = None,
    audit_logger: AuditLogger | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create the gateway app.

    Collaborators left as None are served by one ``CoreServicesClient``.
    """
    owns_db = db is None
    gateway_db = db or GatewayDB(config.db_path)

    core_client: CoreServicesClient | None = None
    if None in (conversation, automation, transcription, media_analysis, reply_generator):
        core_client = CoreServicesClient(config.core_services_url, token=config.core_services_token)
    conversation = conversation or core_client
    automation = automation or core_client
    transcription = transcription or core_client
    media_analysis = media_analysis or core_client
    reply_generator = reply_generator or core_client

    runner = BackgroundTaskRunner()

    # Tenancy and inbound webhooks
    directory = TenantDirectory(gateway_db)
    channel_senders = dict(senders) if senders is not None else build_senders(config, directory)
    resolver = TenantResolver(
        directory, allow_single_tenant_fallback=config.allow_single_tenant_fallback,
    )
    store = InMemorySessionStore(ttl_seconds=config.chat_session_ttl_seconds)
    link_index = ChannelLinkIndex()
    verifiers = {
        provider: SignatureVerifier(provider.value, config.provider_secret(provider))
        for provider in Provider
    }
    processor = WebhookIngressProcessor(
        verifiers,
        resolver,
        conversation,
        runner,
        automation=automation,
        transcription=transcription,
        media_analysis=media_analysis,
        session_store=store,
        link_index=link_index,
        audit_logger=audit_logger,
        graph_api_base=config.graph_api_base,
    )

    # Outbound webhooks
    endpoints = EndpointRepository(gateway_db)
    deliveries = DeliveryRepository(gateway_db)
    dispatcher = OutboundWebhookDispatcher(
        endpoints,
        deliveries,
        client=http_client,
        timeout_seconds=config.webhook_timeout_seconds,
        runner=runner,
        audit_logger=audit_logger,
    )

    # Public chat
    rate_limiter = MessageIntervalLimiter(config.chat_message_min_interval_seconds)
    store.on_evict(link_index.forget_session)
    store.on_evict(rate_limiter.forget)
    store.on_contact_change(link_index.unregister)
    chat = ChatDependencies(
        store=store,
        tokens=MagicLinkTokens(
            config.chat_token_secret, store, ttl_seconds=config.chat_session_ttl_seconds,
        ),
        link_index=link_index,
        verification=ContactVerificationService(
            store,
            channel_senders,
            link_index,
            max_attempts=config.verification_max_attempts,
            rate_limit_seconds=config.verification_rate_limit_seconds,
            code_ttl_seconds=config.verification_code_ttl_seconds,
            audit_logger=audit_logger,
        ),
        orchestrator=ChannelOrchestrator(store, channel_senders),
        rate_limiter=rate_limiter,
        resolver=resolver,
        conversation=conversation,
        reply_generator=reply_generator,
        runner=runner,
        email_sender=channel_senders.get(ChannelKind.EMAIL),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runner.spawn(dispatcher.resume_pending(), name="webhook-resume")
        cleanup = asyncio.create_task(
            _cleanup_sessions(store, config.session_cleanup_interval_seconds),
            name="chat-session-cleanup",
        )
        logger.info("channelgate started (db=%s)", config.db_path)
        try:
            yield
        finally:
            cleanup.cancel()
            await asyncio.gather(cleanup, return_exceptions=True)
            await dispatcher.aclose()
            await runner.aclose()
            if core_client is not None:
                await core_client.aclose()
            if owns_db:
                gateway_db.close()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.config = config
    app.state.db = gateway_db
    app.state.directory = directory
    app.state.resolver = resolver
    app.state.session_store = store
    app.state.link_index = link_index
    app.state.processor = processor
    app.state.dispatcher = dispatcher
    app.state.endpoints = endpoints
    app.state.deliveries = deliveries
    app.state.runner = runner
    app.state.chat = chat

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    async def prometheus_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(create_webhook_router(processor, config))
    app.include_router(create_chat_router(chat))
    app.include_router(create_admin_router(endpoints, deliveries, dispatcher, audit_logger))

    app.add_middleware(AuthMiddleware, token=config.admin_token, audit_logger=audit_logger)

    return app
