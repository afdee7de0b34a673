"""Outbound webhook delivery with signing, timeouts and timer-scheduled retries.

Each matching endpoint gets one delivery row. The request body is serialized
once; those exact bytes are signed, posted and stored so every retry sends
the same payload. Retries are scheduled with ``loop.call_later`` and update
the row in place.

There is no dedup across separate ``send()`` calls. Callers must not send
the same logical event twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from channelgate import metrics
from channelgate.models import (
    AuditEvent,
    AuditEventType,
    DeliveryStatus,
    OutboundEvent,
    RiskLevel,
    WebhookDelivery,
    WebhookEndpoint,
)
from channelgate.tasks import BackgroundTaskRunner
from channelgate.webhook.signature import sign_body

if TYPE_CHECKING:
    from channelgate.audit.logger import AuditLogger
    from channelgate.outbound.repository import DeliveryRepository, EndpointRepository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
_RESPONSE_BODY_LIMIT = 2000
ENDPOINT_INACTIVE = "endpoint_inactive"


def serialize_body(body: dict[str, Any]) -> bytes:
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_request_body(delivery_id: str, event: OutboundEvent) -> dict[str, Any]:
    return {
        "id": delivery_id,
        "type": event.event_type,
        "tenantId": event.tenant_id,
        "timestamp": event.timestamp,
        "data": event.payload,
        "metadata": event.metadata,
    }


def build_headers(
    endpoint: WebhookEndpoint, delivery_id: str, event_type: str, body_bytes: bytes,
) -> dict[str, str]:
    """Base headers, then custom headers, then the signature."""
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Event": event_type,
        "X-Webhook-Tenant": endpoint.tenant_id,
        "X-Webhook-Delivery-Id": delivery_id,
    }
    headers.update(endpoint.headers)
    if endpoint.secret:
        headers["X-Signature"] = sign_body(endpoint.secret, body_bytes)
    return headers


class OutboundWebhookDispatcher:
    """Delivers tenant events to subscribed endpoints."""

    def __init__(
        self,
        endpoints: EndpointRepository,
        deliveries: DeliveryRepository,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        runner: BackgroundTaskRunner | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._endpoints = endpoints
        self._deliveries = deliveries
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(verify=True)
        self._timeout = timeout_seconds
        self._runner = runner or BackgroundTaskRunner()
        self._audit = audit_logger
        self._timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def scheduled_retries(self) -> int:
        return len(self._timers)

    async def send(self, event: OutboundEvent) -> list[str]:
        """Create one delivery per matching endpoint and run first attempts.

        Returns the created delivery ids. Never raises for endpoint failures.
        """
        endpoints = self._endpoints.list_active_matching(event.tenant_id, event.event_type)
        if not endpoints:
            logger.debug(
                "No endpoints for %s in tenant %s", event.event_type, event.tenant_id,
            )
            return []

        jobs: list[tuple[WebhookEndpoint, str, dict[str, Any]]] = []
        for endpoint in endpoints:
            delivery = self._deliveries.create(endpoint, event.event_type, event.payload)
            jobs.append((endpoint, delivery.id, build_request_body(delivery.id, event)))

        results = await asyncio.gather(
            *(self._attempt(endpoint, delivery_id, body) for endpoint, delivery_id, body in jobs),
            return_exceptions=True,
        )
        for (endpoint, delivery_id, _), result in zip(jobs, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery %s to endpoint %s crashed: %s",
                    delivery_id, endpoint.id, result,
                    exc_info=result,
                )
        return [delivery_id for _, delivery_id, _ in jobs]

    async def retry_delivery(self, delivery_id: str) -> None:
        """Run the next attempt for an existing delivery row."""
        self._timers.pop(delivery_id, None)
        delivery = self._deliveries.get(delivery_id)
        if delivery is None:
            logger.warning("Retry fired for unknown delivery %s", delivery_id)
            return
        if delivery.status is DeliveryStatus.SUCCESS or not delivery.retries_remaining:
            return
        endpoint = self._endpoints.get(delivery.endpoint_id)
        if endpoint is None:
            self._deliveries.close_as_failed(delivery_id, ENDPOINT_INACTIVE)
            return
        await self._attempt(endpoint, delivery_id, self._request_body_for(delivery))

    async def resume_pending(self) -> int:
        """Re-attempt deliveries left pending or retryable by a previous process.

        Rows whose endpoint is gone or inactive are closed as failed.
        Returns the number of deliveries re-attempted.
        """
        resumable: list[tuple[WebhookEndpoint, WebhookDelivery]] = []
        for delivery in self._deliveries.list_resumable():
            if delivery.id in self._timers:
                continue
            endpoint = self._endpoints.get(delivery.endpoint_id)
            if endpoint is None or not endpoint.is_active:
                self._deliveries.close_as_failed(delivery.id, ENDPOINT_INACTIVE)
                continue
            resumable.append((endpoint, delivery))

        if resumable:
            logger.info("Resuming %d outbound webhook deliveries", len(resumable))
        results = await asyncio.gather(
            *(self._attempt(e, d.id, self._request_body_for(d)) for e, d in resumable),
            return_exceptions=True,
        )
        for (_, delivery), result in zip(resumable, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Resumed delivery %s crashed: %s", delivery.id, result, exc_info=result,
                )
        return len(resumable)

    async def aclose(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        await self._runner.aclose()
        if self._owns_client:
            await self._client.aclose()

    # --- Attempts ---

    async def _attempt(
        self, endpoint: WebhookEndpoint, delivery_id: str, body: dict[str, Any],
    ) -> None:
        event_type = str(body.get("type", ""))
        body_bytes = serialize_body(body)
        headers = build_headers(endpoint, delivery_id, event_type, body_bytes)
        self._deliveries.mark_started(delivery_id, body, headers)

        response_status: int | None = None
        response_body: str | None = None
        start = metrics.monotonic()
        try:
            resp = await self._client.post(
                endpoint.url, content=body_bytes, headers=headers, timeout=self._timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        else:
            response_status = resp.status_code
            response_body = resp.text[:_RESPONSE_BODY_LIMIT]
            if 200 <= resp.status_code < 300:
                latency = metrics.duration_ms(start)
                delivery = self._deliveries.mark_success(delivery_id, resp.status_code, response_body)
                metrics.record_delivery(endpoint.tenant_id, event_type, "success", latency)
                logger.info(
                    "Delivered %s to endpoint %s (delivery=%s, attempt=%d, status=%d)",
                    event_type, endpoint.id, delivery_id, delivery.attempt, resp.status_code,
                )
                self._log_attempt(delivery, "success")
                return
            error = f"HTTP {resp.status_code}"

        latency = metrics.duration_ms(start)
        delivery = self._deliveries.mark_failure(
            delivery_id, error, response_status=response_status, response_body=response_body,
        )
        metrics.record_delivery(endpoint.tenant_id, event_type, "failed", latency)
        self._log_attempt(delivery, "failure")

        if delivery.retries_remaining:
            delay = endpoint.retry_policy.delay_seconds(delivery.attempt)
            logger.info(
                "Delivery %s attempt %d/%d failed (%s); retrying in %.1fs",
                delivery_id, delivery.attempt, delivery.max_attempts, error, delay,
            )
            self._schedule_retry(delivery_id, delay)
            return

        logger.warning(
            "Delivery %s to endpoint %s exhausted after %d attempts: %s",
            delivery_id, endpoint.id, delivery.attempt, error,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.DELIVERY_EXHAUSTED,
                tenant_id=delivery.tenant_id,
                action="outbound_delivery",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={
                    "delivery_id": delivery_id,
                    "endpoint_id": endpoint.id,
                    "event_type": event_type,
                    "error": error,
                },
            ))

    def _schedule_retry(self, delivery_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[delivery_id] = loop.call_later(delay, self._fire_retry, delivery_id)

    def _fire_retry(self, delivery_id: str) -> None:
        self._runner.spawn(self.retry_delivery(delivery_id), name=f"webhook-retry:{delivery_id}")

    @staticmethod
    def _request_body_for(delivery: WebhookDelivery) -> dict[str, Any]:
        if delivery.request_body:
            return delivery.request_body
        # Never attempted: rebuild from the stored snapshot
        return {
            "id": delivery.id,
            "type": delivery.event_type,
            "tenantId": delivery.tenant_id,
            "timestamp": delivery.created_at,
            "data": delivery.payload,
            "metadata": {},
        }

    def _log_attempt(self, delivery: WebhookDelivery, result: str) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEvent(
            event_type=AuditEventType.DELIVERY_ATTEMPT,
            tenant_id=delivery.tenant_id,
            action="outbound_delivery",
            result=result,
            risk_level=RiskLevel.INFO if result == "success" else RiskLevel.LOW,
            details={
                "delivery_id": delivery.id,
                "endpoint_id": delivery.endpoint_id,
                "event_type": delivery.event_type,
                "attempt": delivery.attempt,
                "response_status": delivery.response_status,
            },
        ))
