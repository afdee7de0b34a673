"""Integration tests for app wiring: health, metrics and startup/shutdown."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from channelgate.models import ChannelKind
from channelgate.outbound.repository import DeliveryRepository, EndpointRepository
from channelgate.storage.db import GatewayDB
from tests.conftest import make_app, make_config, make_whatsapp_payload, to_body


def _client(app) -> AsyncClient:  # noqa: ANN001
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public(gateway_db: GatewayDB) -> None:
    async with _client(make_app(gateway_db)) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics_exposes_webhook_counters(gateway_db: GatewayDB) -> None:
    async with _client(make_app(gateway_db)) as client:
        await client.post("/webhooks/whatsapp", content=to_body(make_whatsapp_payload()))
        resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "channelgate_inbound_webhooks_total" in resp.text


@pytest.mark.asyncio
async def test_startup_resumes_pending_deliveries(gateway_db: GatewayDB) -> None:
    endpoints = EndpointRepository(gateway_db)
    endpoint = endpoints.create(
        tenant_id="T1", url="https://hooks.example/in", events=["*"],
    )
    delivery = DeliveryRepository(gateway_db).create(endpoint, "order.created", {"order": 1})

    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app = make_app(gateway_db, http_client=http_client)

    async with app.router.lifespan_context(app):
        await app.state.runner.drain()
        row = app.state.deliveries.get(delivery.id)

    await http_client.aclose()
    assert len(received) == 1
    assert received[0].headers["X-Webhook-Delivery-Id"] == delivery.id
    assert row.status == "success"


@pytest.mark.asyncio
async def test_session_cleanup_runs_periodically(gateway_db: GatewayDB) -> None:
    config = make_config(session_cleanup_interval_seconds=0.01)
    app = make_app(gateway_db, config=config)
    store = app.state.session_store
    session = store.create_session("T1")
    store.link_channel(session.id, ChannelKind.EMAIL, "a@b.co", verified=True)
    app.state.link_index.register(ChannelKind.EMAIL, "a@b.co", session.id)
    session.last_activity -= 2 * 86_400

    async with app.router.lifespan_context(app):
        await asyncio.sleep(0.05)

    assert len(store) == 0
    assert app.state.link_index.find_session(ChannelKind.EMAIL, "a@b.co") is None
