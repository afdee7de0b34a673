"""Click CLI for operating and serving the channel gateway."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path

import click
import uvicorn

from channelgate.api.admin_routes import delivery_to_dict, endpoint_to_dict
from channelgate.api.app import create_app
from channelgate.audit.logger import AuditLogger, iter_audit_events, validate_audit_chain
from channelgate.config import GatewayConfig
from channelgate.models import AuditEventType, ChannelKind, RetryPolicy
from channelgate.outbound.dispatcher import OutboundWebhookDispatcher
from channelgate.outbound.repository import (
    DeliveryRepository,
    EndpointNotFoundError,
    EndpointRepository,
)
from channelgate.storage.db import GatewayDB
from channelgate.tenancy import TenantDirectory


@click.group()
@click.option("--db", default="data/channelgate.db", help="Gateway database path.")
@click.option("--audit-log", default=None, help="Audit log file path.")
@click.pass_context
def cli(ctx: click.Context, db: str, audit_log: str | None) -> None:
    """Channel gateway operator CLI."""
    ctx.ensure_object(dict)
    gateway_db = GatewayDB(db)
    ctx.call_on_close(gateway_db.close)
    ctx.obj["db_path"] = db
    ctx.obj["db"] = gateway_db
    ctx.obj["audit_logger"] = AuditLogger(audit_log) if audit_log else None
    ctx.obj["endpoints"] = EndpointRepository(gateway_db)
    ctx.obj["deliveries"] = DeliveryRepository(gateway_db)
    ctx.obj["directory"] = TenantDirectory(gateway_db)


# --- Tenants ---


@cli.group("tenants")
def tenants_group() -> None:
    """Manage tenants, custom domains and provider channels."""


@tenants_group.command("add")
@click.argument("tenant_id")
@click.option("--subdomain", default=None, help="Subdomain label for widget host resolution.")
@click.pass_context
def tenants_add(ctx: click.Context, tenant_id: str, subdomain: str | None) -> None:
    """Create or update a tenant."""
    directory: TenantDirectory = ctx.obj["directory"]
    directory.add_tenant(tenant_id, subdomain)
    click.echo(f"Tenant saved: {tenant_id}")


@tenants_group.command("add-domain")
@click.argument("tenant_id")
@click.argument("domain")
@click.pass_context
def tenants_add_domain(ctx: click.Context, tenant_id: str, domain: str) -> None:
    """Map a custom domain to a tenant."""
    directory: TenantDirectory = ctx.obj["directory"]
    directory.add_custom_domain(tenant_id, domain)
    click.echo(f"Domain {domain.lower()} -> {tenant_id}")


@tenants_group.command("add-channel")
@click.argument("tenant_id")
@click.argument("channel_type", type=click.Choice([k.value for k in ChannelKind] + ["generic"]))
@click.argument("external_id")
@click.option(
    "--access-token", default=None,
    help="Tenant's own Graph API token; replies then go out from this channel.",
)
@click.pass_context
def tenants_add_channel(
    ctx: click.Context,
    tenant_id: str,
    channel_type: str,
    external_id: str,
    access_token: str | None,
) -> None:
    """Register a provider-native identifier (phone number id, page id, inbox, connector)."""
    directory: TenantDirectory = ctx.obj["directory"]
    channel_id = directory.add_channel(tenant_id, channel_type, external_id, access_token)
    click.echo(channel_id)


# --- Endpoints ---


@cli.group("endpoints")
def endpoints_group() -> None:
    """Manage outbound webhook endpoints."""


@endpoints_group.command("add")
@click.argument("tenant_id")
@click.argument("url")
@click.option("--event", "events", multiple=True, required=True, help="Event type, or '*'.")
@click.option("--name", default="", help="Display name.")
@click.option("--secret", default=None, help="Signing secret for X-Signature.")
@click.option("--header", "headers", multiple=True, help="Extra header as Name=Value.")
@click.option("--max-attempts", default=3, show_default=True, type=int)
@click.option("--retry-delay-ms", default=2000, show_default=True, type=int)
@click.option("--backoff", default=2.0, show_default=True, type=float)
@click.pass_context
def endpoints_add(
    ctx: click.Context,
    tenant_id: str,
    url: str,
    events: tuple[str, ...],
    name: str,
    secret: str | None,
    headers: tuple[str, ...],
    max_attempts: int,
    retry_delay_ms: int,
    backoff: float,
) -> None:
    """Register a webhook endpoint for a tenant."""
    parsed_headers: dict[str, str] = {}
    for header in headers:
        key, sep, value = header.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected Name=Value, got {header!r}", param_hint="--header")
        parsed_headers[key.strip()] = value.strip()

    repo: EndpointRepository = ctx.obj["endpoints"]
    endpoint = repo.create(
        tenant_id=tenant_id,
        url=url,
        events=list(events),
        secret=secret,
        headers=parsed_headers,
        retry_policy=RetryPolicy(
            max_attempts=max_attempts,
            retry_delay_ms=retry_delay_ms,
            backoff_multiplier=backoff,
        ),
        name=name,
    )
    click.echo(json.dumps(endpoint_to_dict(endpoint), indent=2))


@endpoints_group.command("list")
@click.argument("tenant_id")
@click.pass_context
def endpoints_list(ctx: click.Context, tenant_id: str) -> None:
    """List a tenant's endpoints."""
    repo: EndpointRepository = ctx.obj["endpoints"]
    click.echo(json.dumps([endpoint_to_dict(e) for e in repo.list_by_tenant(tenant_id)], indent=2))


def _set_active(ctx: click.Context, endpoint_id: str, active: bool) -> None:
    repo: EndpointRepository = ctx.obj["endpoints"]
    try:
        repo.set_active(endpoint_id, active)
    except EndpointNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Endpoint {'enabled' if active else 'disabled'}: {endpoint_id}")


@endpoints_group.command("enable")
@click.argument("endpoint_id")
@click.pass_context
def endpoints_enable(ctx: click.Context, endpoint_id: str) -> None:
    """Resume deliveries to an endpoint."""
    _set_active(ctx, endpoint_id, True)


@endpoints_group.command("disable")
@click.argument("endpoint_id")
@click.pass_context
def endpoints_disable(ctx: click.Context, endpoint_id: str) -> None:
    """Stop deliveries to an endpoint."""
    _set_active(ctx, endpoint_id, False)


# --- Deliveries ---


@cli.group("deliveries")
def deliveries_group() -> None:
    """Inspect and resume outbound deliveries."""


@deliveries_group.command("list")
@click.argument("endpoint_id")
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def deliveries_list(ctx: click.Context, endpoint_id: str, limit: int) -> None:
    """Show recent deliveries for an endpoint, newest first."""
    repo: DeliveryRepository = ctx.obj["deliveries"]
    rows = repo.list_by_endpoint(endpoint_id, limit)
    click.echo(json.dumps([delivery_to_dict(d) for d in rows], indent=2))


@deliveries_group.command("resume")
@click.pass_context
def deliveries_resume(ctx: click.Context) -> None:
    """Run one attempt for every pending or retryable delivery."""
    dispatcher = OutboundWebhookDispatcher(
        ctx.obj["endpoints"],
        ctx.obj["deliveries"],
        audit_logger=ctx.obj["audit_logger"],
    )

    async def _run() -> int:
        try:
            return await dispatcher.resume_pending()
        finally:
            await dispatcher.aclose()

    count = asyncio.run(_run())
    click.echo(f"Resumed {count} deliveries")


# --- Audit ---


@cli.group("audit")
def audit_group() -> None:
    """Inspect the hash-chained audit log."""


@audit_group.command("verify")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def audit_verify(log_path: Path) -> None:
    """Check the hash chain of an audit log file."""
    result = validate_audit_chain(log_path)
    if not result.valid:
        raise click.ClickException(f"Chain broken at line {result.broken_at_line}")
    click.echo(f"Chain intact: {result.entries} entries")


@audit_group.command("show")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tenant", "tenant_id", default=None, help="Only entries for this tenant.")
@click.option(
    "--type", "event_type", default=None,
    type=click.Choice([t.value for t in AuditEventType]),
)
@click.option("--limit", default=50, show_default=True, type=int, help="Most recent N entries.")
def audit_show(log_path: Path, tenant_id: str | None, event_type: str | None, limit: int) -> None:
    """Print matching audit entries as JSON Lines, oldest first."""
    entries = list(iter_audit_events(log_path, tenant_id=tenant_id, event_type=event_type))
    for entry in entries[-limit:]:
        click.echo(json.dumps(entry))


# --- Server ---


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.option("--log-level", default="info", show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, log_level: str) -> None:
    """Run the gateway HTTP server. Other settings come from the environment."""
    config = dataclasses.replace(GatewayConfig.from_env(), db_path=ctx.obj["db_path"])
    app = create_app(config, db=ctx.obj["db"], audit_logger=ctx.obj["audit_logger"])
    uvicorn.run(app, host=host, port=port, log_level=log_level)
