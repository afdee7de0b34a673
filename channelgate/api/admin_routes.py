"""Admin API for webhook endpoint management and event publishing."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from channelgate.models import (
    AuditEvent,
    AuditEventType,
    OutboundEvent,
    RetryPolicy,
    RiskLevel,
    WebhookDelivery,
    WebhookEndpoint,
)
from channelgate.outbound.repository import EndpointNotFoundError

if TYPE_CHECKING:
    from channelgate.audit.logger import AuditLogger
    from channelgate.outbound.dispatcher import OutboundWebhookDispatcher
    from channelgate.outbound.repository import DeliveryRepository, EndpointRepository

logger = logging.getLogger(__name__)


class EndpointCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    url: str = Field(pattern=r"^https?://")
    events: list[str] = Field(min_length=1)
    name: str = ""
    secret: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class EndpointUpdate(BaseModel):
    is_active: bool


def endpoint_to_dict(endpoint: WebhookEndpoint) -> dict[str, Any]:
    """Public view of an endpoint; the signing secret is never returned."""
    data = endpoint.model_dump(exclude={"secret"})
    data["has_secret"] = endpoint.secret is not None
    return data


def delivery_to_dict(delivery: WebhookDelivery) -> dict[str, Any]:
    return delivery.model_dump(mode="json", exclude={"request_body"})


def create_admin_router(
    endpoints: EndpointRepository,
    deliveries: DeliveryRepository,
    dispatcher: OutboundWebhookDispatcher,
    audit_logger: AuditLogger | None = None,
) -> APIRouter:
    """Create the admin router. Authentication is enforced by AuthMiddleware."""
    router = APIRouter(prefix="/admin")

    def audit_change(action: str, endpoint_id: str, tenant_id: str | None) -> None:
        if audit_logger:
            audit_logger.log(AuditEvent(
                event_type=AuditEventType.ENDPOINT_CHANGED,
                tenant_id=tenant_id,
                action=action,
                result="success",
                risk_level=RiskLevel.MEDIUM,
                details={"endpoint_id": endpoint_id},
            ))

    @router.post("/endpoints", status_code=201)
    async def create_endpoint(body: EndpointCreate) -> JSONResponse:
        endpoint = endpoints.create(
            tenant_id=body.tenant_id,
            url=body.url,
            events=body.events,
            secret=body.secret,
            headers=body.headers,
            retry_policy=body.retry_policy,
            name=body.name,
        )
        audit_change("create_endpoint", endpoint.id, endpoint.tenant_id)
        logger.info("Registered endpoint %s for tenant %s", endpoint.id, endpoint.tenant_id)
        return JSONResponse(endpoint_to_dict(endpoint), status_code=201)

    @router.get("/endpoints")
    async def list_endpoints(tenant_id: str) -> JSONResponse:
        return JSONResponse({
            "endpoints": [endpoint_to_dict(e) for e in endpoints.list_by_tenant(tenant_id)],
        })

    @router.patch("/endpoints/{endpoint_id}")
    async def update_endpoint(endpoint_id: str, body: EndpointUpdate) -> JSONResponse:
        try:
            endpoint = endpoints.set_active(endpoint_id, body.is_active)
        except EndpointNotFoundError:
            return JSONResponse({"error": "Endpoint not found"}, status_code=404)
        action = "enable_endpoint" if body.is_active else "disable_endpoint"
        audit_change(action, endpoint_id, endpoint.tenant_id)
        return JSONResponse(endpoint_to_dict(endpoint))

    @router.delete("/endpoints/{endpoint_id}")
    async def delete_endpoint(endpoint_id: str) -> Response:
        endpoint = endpoints.get(endpoint_id)
        if endpoint is None:
            return JSONResponse({"error": "Endpoint not found"}, status_code=404)
        endpoints.delete(endpoint_id)
        audit_change("delete_endpoint", endpoint_id, endpoint.tenant_id)
        return Response(status_code=204)

    @router.get("/endpoints/{endpoint_id}/deliveries")
    async def list_deliveries(endpoint_id: str, limit: int = 50) -> JSONResponse:
        if endpoints.get(endpoint_id) is None:
            return JSONResponse({"error": "Endpoint not found"}, status_code=404)
        limit = max(1, min(limit, 500))
        return JSONResponse({
            "deliveries": [
                delivery_to_dict(d) for d in deliveries.list_by_endpoint(endpoint_id, limit)
            ],
        })

    @router.post("/events", status_code=202)
    async def publish_event(body: OutboundEvent) -> JSONResponse:
        delivery_ids = await dispatcher.send(body)
        return JSONResponse({"deliveries": delivery_ids}, status_code=202)

    return router
