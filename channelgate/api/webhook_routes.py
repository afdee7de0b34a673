"""Provider webhook endpoints.

POST handlers always answer 200 with the ingress result body. The GET
subscription handshake is the only route that returns 403.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from channelgate import metrics
from channelgate.models import Provider
from channelgate.webhook.canonical import handle_verification

if TYPE_CHECKING:
    from channelgate.config import GatewayConfig
    from channelgate.webhook.ingress import WebhookIngressProcessor

logger = logging.getLogger(__name__)

_HANDSHAKE_PROVIDERS = {Provider.WHATSAPP, Provider.INSTAGRAM}


def _parse_provider(raw: str) -> Provider | None:
    try:
        return Provider(raw.lower())
    except ValueError:
        return None


def create_webhook_router(
    processor: WebhookIngressProcessor,
    config: GatewayConfig,
) -> APIRouter:
    """Create the provider webhook router."""
    router = APIRouter(prefix="/webhooks")

    @router.get("/{provider}")
    async def verify(provider: str, request: Request) -> Response:
        """Meta subscription handshake: echo ``hub.challenge`` on a valid token."""
        parsed = _parse_provider(provider)
        if parsed not in _HANDSHAKE_PROVIDERS:
            label = parsed.value if parsed is not None else "unknown"
            metrics.WEBHOOK_VERIFICATIONS_TOTAL.labels(provider=label, result="fail").inc()
            return JSONResponse({"error": "Verification failed"}, status_code=403)

        result = handle_verification(dict(request.query_params), config.verify_token(parsed))
        ok = result["status_code"] == 200
        metrics.WEBHOOK_VERIFICATIONS_TOTAL.labels(
            provider=parsed.value, result="ok" if ok else "fail",
        ).inc()
        if not ok:
            logger.warning("Webhook verification failed for %s", parsed.value)
            return JSONResponse({"error": result["error"]}, status_code=403)
        return PlainTextResponse(result["content"])

    async def _receive(provider: str, request: Request, status_only: bool) -> JSONResponse:
        parsed = _parse_provider(provider)
        if parsed is None:
            return JSONResponse({"success": False, "error": "unsupported_provider"})
        raw_body = await request.body()
        host = request.headers.get("x-forwarded-host") or request.headers.get("host")
        result = await processor.process(
            parsed,
            raw_body,
            request.headers,
            host=host,
            status_only=status_only,
            source_ip=request.client.host if request.client else None,
        )
        return JSONResponse(result.to_response())

    @router.post("/{provider}")
    async def receive(provider: str, request: Request) -> JSONResponse:
        return await _receive(provider, request, status_only=False)

    @router.post("/{provider}/status")
    async def receive_status(provider: str, request: Request) -> JSONResponse:
        """Delivery/read/failed callbacks. Inbound messages in the body are ignored."""
        return await _receive(provider, request, status_only=True)

    return router
