"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field

from channelgate.models import Provider

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_optional(name: str, *fallbacks: str) -> str | None:
    for key in (name, *fallbacks):
        value = os.environ.get(key)
        if value:
            return value
    return None


@dataclass(frozen=True)
class GatewayConfig:
    """All tunables for the gateway. Defaults boot a working dev instance."""

    db_path: str = "data/channelgate.db"
    admin_token: str = ""
    audit_log_path: str | None = None

    provider_secrets: dict[Provider, str | None] = field(default_factory=dict)
    verify_tokens: dict[Provider, str | None] = field(default_factory=dict)

    webhook_timeout_seconds: float = 10.0
    allow_single_tenant_fallback: bool = False

    chat_session_ttl_seconds: int = 86_400
    chat_token_secret: str = field(default_factory=lambda: secrets.token_hex(32))
    chat_message_min_interval_seconds: float = 1.0
    session_cleanup_interval_seconds: float = 300.0

    verification_max_attempts: int = 3
    verification_rate_limit_seconds: int = 60
    verification_code_ttl_seconds: int = 600

    graph_api_base: str = "https://graph.facebook.com/v18.0"
    whatsapp_phone_number_id: str | None = None
    whatsapp_access_token: str | None = None
    instagram_access_token: str | None = None

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None

    core_services_url: str = "http://localhost:3001"
    core_services_token: str | None = None

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Build configuration from the process environment."""
        provider_secrets = {
            Provider.WHATSAPP: _env_optional("WHATSAPP_APP_SECRET", "FACEBOOK_APP_SECRET"),
            Provider.INSTAGRAM: _env_optional("INSTAGRAM_APP_SECRET", "FACEBOOK_APP_SECRET"),
            Provider.EMAIL: _env_optional("EMAIL_WEBHOOK_SECRET"),
            Provider.GENERIC: _env_optional("GENERIC_WEBHOOK_SECRET"),
        }
        verify_tokens = {
            Provider.WHATSAPP: _env_optional("WHATSAPP_VERIFY_TOKEN"),
            Provider.INSTAGRAM: _env_optional("INSTAGRAM_VERIFY_TOKEN"),
        }
        kwargs: dict[str, object] = {
            "db_path": os.environ.get("CHANNELGATE_DB_PATH", "data/channelgate.db"),
            "admin_token": os.environ.get("ADMIN_TOKEN", ""),
            "audit_log_path": _env_optional("AUDIT_LOG_PATH"),
            "provider_secrets": provider_secrets,
            "verify_tokens": verify_tokens,
            "webhook_timeout_seconds": int(os.environ.get("WEBHOOK_TIMEOUT", "10000")) / 1000,
            "allow_single_tenant_fallback": _env_flag("ALLOW_SINGLE_TENANT_FALLBACK"),
            "chat_session_ttl_seconds": int(os.environ.get("CHAT_SESSION_TTL_SECONDS", "86400")),
            "chat_message_min_interval_seconds": float(
                os.environ.get("CHAT_MESSAGE_MIN_INTERVAL_SECONDS", "1"),
            ),
            "verification_max_attempts": int(os.environ.get("VERIFICATION_MAX_ATTEMPTS", "3")),
            "verification_rate_limit_seconds": int(
                os.environ.get("VERIFICATION_RATE_LIMIT_SECONDS", "60"),
            ),
            "verification_code_ttl_seconds": int(
                os.environ.get("VERIFICATION_CODE_TTL_SECONDS", "600"),
            ),
            "graph_api_base": os.environ.get("GRAPH_API_BASE", "https://graph.facebook.com/v18.0"),
            "whatsapp_phone_number_id": _env_optional("WHATSAPP_PHONE_NUMBER_ID"),
            "whatsapp_access_token": _env_optional("WHATSAPP_ACCESS_TOKEN"),
            "instagram_access_token": _env_optional("INSTAGRAM_ACCESS_TOKEN"),
            "smtp_host": _env_optional("SMTP_HOST"),
            "smtp_port": int(os.environ.get("SMTP_PORT", "587")),
            "smtp_user": _env_optional("SMTP_USER"),
            "smtp_password": _env_optional("SMTP_PASSWORD"),
            "smtp_from": _env_optional("SMTP_FROM"),
            "core_services_url": os.environ.get("CORE_SERVICES_URL", "http://localhost:3001"),
            "core_services_token": _env_optional("CORE_SERVICES_TOKEN"),
        }
        token_secret = _env_optional("CHAT_TOKEN_SECRET")
        if token_secret:
            kwargs["chat_token_secret"] = token_secret
        return cls(**kwargs)  # type: ignore[arg-type]

    def provider_secret(self, provider: Provider) -> str | None:
        return self.provider_secrets.get(provider)

    def verify_token(self, provider: Provider) -> str | None:
        return self.verify_tokens.get(provider)
