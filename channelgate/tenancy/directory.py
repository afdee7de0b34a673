"""Tenant directory: tenants, custom domains and provider channel identifiers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from channelgate.storage.db import GatewayDB


@dataclass(frozen=True)
class ChannelCredentials:
    """A tenant's own sending identity on a provider channel."""

    external_id: str
    access_token: str


class TenantDirectory:
    """SQLite-backed lookups used by tenant resolution and the operator CLI."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    # --- Writes ---

    def add_tenant(self, tenant_id: str, subdomain: str | None = None) -> None:
        self._db.execute(
            "INSERT INTO tenants (id, subdomain, is_active) VALUES (?, ?, 1) "
            "ON CONFLICT(id) DO UPDATE SET subdomain = excluded.subdomain",
            (tenant_id, subdomain.lower() if subdomain else None),
        )

    def set_tenant_active(self, tenant_id: str, active: bool) -> None:
        self._db.execute(
            "UPDATE tenants SET is_active = ? WHERE id = ?", (int(active), tenant_id),
        )

    def add_custom_domain(self, tenant_id: str, domain: str) -> None:
        self._db.execute(
            "INSERT OR REPLACE INTO custom_domains (domain, tenant_id) VALUES (?, ?)",
            (domain.lower(), tenant_id),
        )

    def add_channel(
        self,
        tenant_id: str,
        channel_type: str,
        external_id: str,
        access_token: str | None = None,
    ) -> str:
        channel_id = str(uuid.uuid4())
        self._db.execute(
            "INSERT INTO channels (id, tenant_id, type, external_id, access_token, is_active) "
            "VALUES (?, ?, ?, ?, ?, 1)",
            (channel_id, tenant_id, channel_type, external_id, access_token),
        )
        return channel_id

    # --- Lookups ---

    def tenant_exists(self, tenant_id: str) -> bool:
        row = self._db.fetch_one(
            "SELECT id FROM tenants WHERE id = ? AND is_active = 1", (tenant_id,),
        )
        return row is not None

    def tenant_for_native_id(self, channel_type: str, external_id: str) -> str | None:
        row = self._db.fetch_one(
            "SELECT tenant_id FROM channels "
            "WHERE type = ? AND external_id = ? AND is_active = 1 LIMIT 1",
            (channel_type, external_id),
        )
        return row["tenant_id"] if row else None

    def tenant_for_custom_domain(self, domain: str) -> str | None:
        row = self._db.fetch_one(
            "SELECT tenant_id FROM custom_domains WHERE domain = ?", (domain,),
        )
        return row["tenant_id"] if row else None

    def tenant_for_subdomain(self, subdomain: str) -> str | None:
        row = self._db.fetch_one(
            "SELECT id FROM tenants WHERE subdomain = ? AND is_active = 1", (subdomain,),
        )
        return row["id"] if row else None

    def active_channel_tenants(self, channel_type: str) -> list[str]:
        rows = self._db.fetch_all(
            "SELECT DISTINCT tenant_id FROM channels WHERE type = ? AND is_active = 1",
            (channel_type,),
        )
        return [r["tenant_id"] for r in rows]

    def channel_credentials(self, tenant_id: str, channel_type: str) -> ChannelCredentials | None:
        """Oldest active channel of this type that carries its own access token."""
        row = self._db.fetch_one(
            "SELECT external_id, access_token FROM channels "
            "WHERE tenant_id = ? AND type = ? AND is_active = 1 AND access_token IS NOT NULL "
            "ORDER BY rowid LIMIT 1",
            (tenant_id, channel_type),
        )
        if row is None:
            return None
        return ChannelCredentials(external_id=row["external_id"], access_token=row["access_token"])
