"""Shared Pydantic data models for channelgate."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class Provider(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    EMAIL = "email"
    GENERIC = "generic"


class ChannelKind(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_REJECTED = "webhook_rejected"
    DELIVERY_ATTEMPT = "delivery_attempt"
    DELIVERY_EXHAUSTED = "delivery_exhausted"
    VERIFICATION_REQUESTED = "verification_requested"
    VERIFICATION_SUCCEEDED = "verification_succeeded"
    VERIFICATION_FAILED = "verification_failed"
    ADMIN_AUTH_FAILURE = "admin_auth_failure"
    ENDPOINT_CHANGED = "endpoint_changed"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


WILDCARD_EVENT = "*"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Outbound webhook models ---


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=20)
    retry_delay_ms: int = Field(default=2000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def delay_seconds(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return self.retry_delay_ms * self.backoff_multiplier ** (attempt - 1) / 1000


class WebhookEndpoint(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    url: str
    events: list[str]
    secret: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    is_active: bool = True
    created_at: str = Field(default_factory=_now_iso)

    def subscribes_to(self, event_type: str) -> bool:
        return WILDCARD_EVENT in self.events or event_type in self.events


class WebhookDelivery(BaseModel):
    id: str
    endpoint_id: str
    tenant_id: str
    event_type: str
    payload: dict[str, Any]
    request_body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def retries_remaining(self) -> bool:
        return self.attempt < self.max_attempts


class OutboundEvent(BaseModel):
    """A tenant-domain event to be delivered to subscribed endpoints."""

    tenant_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_now_iso)


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    tenant_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "rejected"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
