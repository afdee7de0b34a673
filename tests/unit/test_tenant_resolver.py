"""Tests for tenant directory lookups and resolution order."""

from __future__ import annotations

import pytest

from channelgate.storage.db import GatewayDB
from channelgate.tenancy import (
    ChannelCredentials,
    ProviderContext,
    TenantDirectory,
    TenantResolver,
    normalize_host,
)


@pytest.fixture
def directory(gateway_db: GatewayDB) -> TenantDirectory:
    d = TenantDirectory(gateway_db)
    d.add_tenant("T1", subdomain="acme")
    d.add_tenant("T2", subdomain="globex")
    d.add_custom_domain("T2", "chat.globex.com")
    d.add_channel("T1", "whatsapp", "123")
    d.add_channel("T2", "instagram", "PAGE2")
    return d


class TestNormalizeHost:
    @pytest.mark.parametrize(("raw", "expected"), [
        ("Acme.Example.com", "acme.example.com"),
        ("acme.example.com:8080", "acme.example.com"),
        ("www.globex.com", "globex.com"),
        ("[::1]:3000", "::1"),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw: str | None, expected: str | None) -> None:
        assert normalize_host(raw) == expected


class TestTenantResolver:
    def test_explicit_tenant_wins(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        ctx = ProviderContext("whatsapp", explicit_tenant_id="T9", native_ids=["123"])
        assert resolver.resolve(ctx) == "T9"

    def test_native_id(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("whatsapp", native_ids=["123"])) == "T1"

    def test_native_id_scoped_by_provider(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("instagram", native_ids=["123"])) is None

    def test_custom_domain(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("generic", host="chat.globex.com:443")) == "T2"

    def test_subdomain(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("generic", host="acme.gateway.io")) == "T1"

    def test_bare_host_not_treated_as_subdomain(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve_host("acme") is None

    def test_inactive_tenant_subdomain_ignored(self, directory: TenantDirectory) -> None:
        directory.set_tenant_active("T1", False)
        assert TenantResolver(directory).resolve_host("acme.gateway.io") is None

    def test_unknown_returns_none(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("whatsapp", native_ids=["999"])) is None

    def test_single_tenant_fallback_disabled_by_default(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory)
        assert resolver.resolve(ProviderContext("instagram", native_ids=["OTHER"])) is None

    def test_single_tenant_fallback_when_enabled(self, directory: TenantDirectory) -> None:
        resolver = TenantResolver(directory, allow_single_tenant_fallback=True)
        assert resolver.resolve(ProviderContext("instagram", native_ids=["OTHER"])) == "T2"

    def test_fallback_requires_exactly_one_tenant(self, directory: TenantDirectory) -> None:
        directory.add_channel("T1", "instagram", "PAGE1")
        resolver = TenantResolver(directory, allow_single_tenant_fallback=True)
        assert resolver.resolve(ProviderContext("instagram", native_ids=["OTHER"])) is None


class TestChannelCredentials:
    def test_credentials_need_a_token(self, directory: TenantDirectory) -> None:
        directory.add_channel("T9", "whatsapp", "PN-PLAIN")
        assert directory.channel_credentials("T9", "whatsapp") is None

    def test_oldest_tokened_channel_wins(self, directory: TenantDirectory) -> None:
        directory.add_channel("T9", "whatsapp", "PN-A", access_token="tok-a")
        directory.add_channel("T9", "whatsapp", "PN-B", access_token="tok-b")
        assert directory.channel_credentials("T9", "whatsapp") == ChannelCredentials(
            external_id="PN-A", access_token="tok-a",
        )
        assert directory.channel_credentials("T9", "instagram") is None
