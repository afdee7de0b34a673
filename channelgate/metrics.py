"""Prometheus collectors for webhook traffic and channel sends."""

from __future__ import annotations

from time import perf_counter

from prometheus_client import Counter, Histogram

_LATENCY_BUCKETS_MS = (50, 100, 200, 500, 1000, 2000, 5000)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "channelgate_webhook_deliveries_total",
    "Outbound webhook delivery attempts",
    ["tenant", "event", "status"],
)
WEBHOOK_DELIVERY_LATENCY_MS = Histogram(
    "channelgate_webhook_delivery_latency_ms",
    "Outbound webhook delivery latency (ms)",
    ["tenant", "event", "status"],
    buckets=_LATENCY_BUCKETS_MS,
)
INBOUND_WEBHOOKS_TOTAL = Counter(
    "channelgate_inbound_webhooks_total",
    "Inbound provider webhooks by outcome",
    ["provider", "status"],
)
INBOUND_PROCESS_LATENCY_MS = Histogram(
    "channelgate_inbound_process_latency_ms",
    "Inbound webhook processing latency (ms)",
    ["provider", "status"],
    buckets=_LATENCY_BUCKETS_MS,
)
WEBHOOK_VERIFICATIONS_TOTAL = Counter(
    "channelgate_webhook_verifications_total",
    "Provider webhook subscription handshakes",
    ["provider", "result"],
)
CHANNEL_SENDS_TOTAL = Counter(
    "channelgate_channel_sends_total",
    "Messages sent through native channel senders",
    ["channel", "status"],
)


def monotonic() -> float:
    return perf_counter()


def duration_ms(start: float) -> float:
    """Milliseconds elapsed since ``start`` (a perf_counter value)."""
    return (perf_counter() - start) * 1000.0


def record_delivery(tenant: str, event: str, status: str, latency_ms: float) -> None:
    WEBHOOK_DELIVERIES_TOTAL.labels(tenant=tenant, event=event, status=status).inc()
    WEBHOOK_DELIVERY_LATENCY_MS.labels(tenant=tenant, event=event, status=status).observe(
        latency_ms,
    )


def record_inbound(provider: str, status: str, latency_ms: float) -> None:
    INBOUND_WEBHOOKS_TOTAL.labels(provider=provider, status=status).inc()
    INBOUND_PROCESS_LATENCY_MS.labels(provider=provider, status=status).observe(latency_ms)
