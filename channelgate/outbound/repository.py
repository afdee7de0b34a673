"""Persistence for outbound webhook endpoints and their delivery history."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any

from channelgate.models import DeliveryStatus, RetryPolicy, WebhookDelivery, WebhookEndpoint
from channelgate.storage.db import GatewayDB


class EndpointNotFoundError(Exception):
    """Raised when a webhook endpoint ID does not exist."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


class EndpointRepository:
    """Tenant-owned webhook subscriptions.

    The dispatcher only reads endpoints; ``is_active`` is toggled by admins.
    """

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def create(
        self,
        tenant_id: str,
        url: str,
        events: list[str],
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        name: str = "",
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            url=url,
            events=events,
            secret=secret or None,
            headers=headers or {},
            retry_policy=retry_policy or RetryPolicy(),
        )
        policy = endpoint.retry_policy
        self._db.execute(
            """INSERT INTO webhook_endpoints
               (id, tenant_id, name, url, events_json, secret, headers_json,
                max_attempts, retry_delay_ms, backoff_multiplier, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
            (
                endpoint.id,
                endpoint.tenant_id,
                endpoint.name,
                endpoint.url,
                json.dumps(endpoint.events),
                endpoint.secret,
                json.dumps(endpoint.headers),
                policy.max_attempts,
                policy.retry_delay_ms,
                policy.backoff_multiplier,
                endpoint.created_at,
            ),
        )
        return endpoint

    def get(self, endpoint_id: str) -> WebhookEndpoint | None:
        row = self._db.fetch_one("SELECT * FROM webhook_endpoints WHERE id = ?", (endpoint_id,))
        return self._row_to_endpoint(row) if row else None

    def list_by_tenant(self, tenant_id: str) -> list[WebhookEndpoint]:
        rows = self._db.fetch_all(
            "SELECT * FROM webhook_endpoints WHERE tenant_id = ? ORDER BY created_at",
            (tenant_id,),
        )
        return [self._row_to_endpoint(r) for r in rows]

    def list_active_matching(self, tenant_id: str, event_type: str) -> list[WebhookEndpoint]:
        """Active endpoints of the tenant subscribed to ``event_type`` or ``*``."""
        rows = self._db.fetch_all(
            "SELECT * FROM webhook_endpoints WHERE tenant_id = ? AND is_active = 1 "
            "ORDER BY created_at",
            (tenant_id,),
        )
        endpoints = [self._row_to_endpoint(r) for r in rows]
        return [e for e in endpoints if e.subscribes_to(event_type)]

    def set_active(self, endpoint_id: str, active: bool) -> WebhookEndpoint:
        row = self._db.execute_returning(
            "UPDATE webhook_endpoints SET is_active = ? WHERE id = ? RETURNING *",
            (int(active), endpoint_id),
        )
        if row is None:
            raise EndpointNotFoundError(f"Endpoint {endpoint_id} not found")
        return self._row_to_endpoint(row)

    def delete(self, endpoint_id: str) -> None:
        cursor = self._db.execute("DELETE FROM webhook_endpoints WHERE id = ?", (endpoint_id,))
        if cursor.rowcount == 0:
            raise EndpointNotFoundError(f"Endpoint {endpoint_id} not found")

    @staticmethod
    def _row_to_endpoint(row: dict[str, Any]) -> WebhookEndpoint:
        return WebhookEndpoint(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            url=row["url"],
            events=json.loads(row["events_json"]),
            secret=row["secret"],
            headers=json.loads(row["headers_json"]),
            retry_policy=RetryPolicy(
                max_attempts=row["max_attempts"],
                retry_delay_ms=row["retry_delay_ms"],
                backoff_multiplier=row["backoff_multiplier"],
            ),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )


class DeliveryRepository:
    """One row per logical delivery, updated in place on every attempt."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def create(
        self,
        endpoint: WebhookEndpoint,
        event_type: str,
        payload: dict[str, Any],
        delivery_id: str | None = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            id=delivery_id or str(uuid.uuid4()),
            endpoint_id=endpoint.id,
            tenant_id=endpoint.tenant_id,
            event_type=event_type,
            payload=payload,
            max_attempts=endpoint.retry_policy.max_attempts,
        )
        self._db.execute(
            """INSERT INTO webhook_deliveries
               (id, endpoint_id, tenant_id, event_type, payload_json, status,
                attempt, max_attempts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
            (
                delivery.id,
                delivery.endpoint_id,
                delivery.tenant_id,
                delivery.event_type,
                json.dumps(payload),
                DeliveryStatus.PENDING.value,
                delivery.max_attempts,
                delivery.created_at,
            ),
        )
        return delivery

    def get(self, delivery_id: str) -> WebhookDelivery | None:
        row = self._db.fetch_one("SELECT * FROM webhook_deliveries WHERE id = ?", (delivery_id,))
        return self._row_to_delivery(row) if row else None

    def mark_started(
        self,
        delivery_id: str,
        request_body: dict[str, Any],
        headers: dict[str, str],
    ) -> None:
        """Store the outgoing request; ``started_at`` is set on the first attempt only."""
        self._db.execute(
            """UPDATE webhook_deliveries
               SET request_body_json = ?, headers_json = ?,
                   started_at = COALESCE(started_at, ?)
               WHERE id = ?""",
            (json.dumps(request_body), json.dumps(headers), _now(), delivery_id),
        )

    def mark_success(
        self, delivery_id: str, response_status: int, response_body: str,
    ) -> WebhookDelivery:
        row = self._db.execute_returning(
            """UPDATE webhook_deliveries
               SET status = ?, attempt = MIN(attempt + 1, max_attempts),
                   response_status = ?, response_body = ?, error_message = NULL,
                   completed_at = ?
               WHERE id = ? RETURNING *""",
            (DeliveryStatus.SUCCESS.value, response_status, response_body, _now(), delivery_id),
        )
        if row is None:
            raise LookupError(f"Delivery {delivery_id} not found")
        return self._row_to_delivery(row)

    def mark_failure(
        self,
        delivery_id: str,
        error_message: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> WebhookDelivery:
        """Record a failed attempt and return the updated row.

        The attempt counter is capped at ``max_attempts``.
        """
        row = self._db.execute_returning(
            """UPDATE webhook_deliveries
               SET status = ?, attempt = MIN(attempt + 1, max_attempts),
                   response_status = ?, response_body = ?, error_message = ?,
                   completed_at = ?
               WHERE id = ? RETURNING *""",
            (
                DeliveryStatus.FAILED.value,
                response_status,
                response_body,
                error_message,
                _now(),
                delivery_id,
            ),
        )
        if row is None:
            raise LookupError(f"Delivery {delivery_id} not found")
        return self._row_to_delivery(row)

    def close_as_failed(self, delivery_id: str, error_message: str) -> None:
        """Terminate a delivery without another attempt."""
        self._db.execute(
            """UPDATE webhook_deliveries
               SET status = ?, attempt = max_attempts, error_message = ?, completed_at = ?
               WHERE id = ?""",
            (DeliveryStatus.FAILED.value, error_message, _now(), delivery_id),
        )

    def list_by_endpoint(self, endpoint_id: str, limit: int = 50) -> list[WebhookDelivery]:
        rows = self._db.fetch_all(
            "SELECT * FROM webhook_deliveries WHERE endpoint_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (endpoint_id, limit),
        )
        return [self._row_to_delivery(r) for r in rows]

    def list_resumable(self) -> list[WebhookDelivery]:
        """Pending rows and failed rows with attempts remaining."""
        rows = self._db.fetch_all(
            "SELECT * FROM webhook_deliveries "
            "WHERE status = ? OR (status = ? AND attempt < max_attempts) "
            "ORDER BY created_at",
            (DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value),
        )
        return [self._row_to_delivery(r) for r in rows]

    @staticmethod
    def _row_to_delivery(row: dict[str, Any]) -> WebhookDelivery:
        return WebhookDelivery(
            id=row["id"],
            endpoint_id=row["endpoint_id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload_json"]),
            request_body=json.loads(row["request_body_json"] or "{}"),
            headers=json.loads(row["headers_json"] or "{}"),
            status=DeliveryStatus(row["status"]),
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            response_status=row["response_status"],
            response_body=row["response_body"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
