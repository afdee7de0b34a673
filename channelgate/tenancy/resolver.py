"""Map an inbound request to the tenant that owns it.

Strategy order, first match wins:

1. Explicit tenant id (header or body field), trusted as given.
2. Provider-native identifier (phone-number id, page id, inbound address).
3. Request host: custom domain, else first DNS label as a subdomain.
4. Single active channel of the provider type, only when
   ``allow_single_tenant_fallback`` is enabled. Development use only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from channelgate.tenancy.directory import TenantDirectory

logger = logging.getLogger(__name__)


def normalize_host(raw: str | None) -> str | None:
    """Lowercase, strip the port and a leading ``www.``."""
    if not raw:
        return None
    host = raw.strip().lower()
    if host.startswith("[") and "]" in host:
        host = host[1 : host.index("]")]
    elif ":" in host:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host or None


@dataclass
class ProviderContext:
    provider: str
    explicit_tenant_id: str | None = None
    native_ids: list[str] = field(default_factory=list)
    host: str | None = None


class TenantResolver:
    def __init__(
        self,
        directory: TenantDirectory,
        allow_single_tenant_fallback: bool = False,
    ) -> None:
        self._directory = directory
        self._allow_fallback = allow_single_tenant_fallback

    def resolve(self, ctx: ProviderContext) -> str | None:
        if ctx.explicit_tenant_id:
            return ctx.explicit_tenant_id

        for native_id in ctx.native_ids:
            tenant_id = self._directory.tenant_for_native_id(ctx.provider, native_id)
            if tenant_id:
                return tenant_id

        tenant_id = self.resolve_host(ctx.host)
        if tenant_id:
            return tenant_id

        if self._allow_fallback:
            tenants = self._directory.active_channel_tenants(ctx.provider)
            if len(tenants) == 1:
                logger.warning(
                    "Single-tenant fallback used for %s webhook (tenant=%s)",
                    ctx.provider,
                    tenants[0],
                )
                return tenants[0]

        logger.warning(
            "Tenant not found for %s webhook (native_ids=%s, host=%s)",
            ctx.provider,
            ctx.native_ids,
            ctx.host,
        )
        return None

    def resolve_host(self, raw_host: str | None) -> str | None:
        host = normalize_host(raw_host)
        if not host:
            return None
        tenant_id = self._directory.tenant_for_custom_domain(host)
        if tenant_id:
            return tenant_id
        if "." not in host:
            return None
        subdomain = host.split(".", 1)[0]
        return self._directory.tenant_for_subdomain(subdomain)
