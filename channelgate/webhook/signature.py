"""HMAC-SHA256 signatures for inbound provider webhooks and outbound deliveries.

Inbound verification is permissive: when no secret is provisioned, or the
provider did not send a signature header, the request is accepted. This keeps
development and staging environments that never received a provider secret
working. ``SignatureVerifier.mode`` makes the state explicit.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from enum import Enum

logger = logging.getLogger(__name__)

_PREFIX = "sha256="


class VerificationMode(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"


def sign_body(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` signature of ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"


def verify_signature(
    secret: str | None,
    signature_header: str | None,
    raw_body: bytes,
) -> bool:
    """Check a ``sha256=<hex>`` header against the raw request bytes.

    Returns True when either the secret or the header is absent.
    Constant-time comparison via hmac.compare_digest.
    """
    if not secret or not signature_header:
        return True
    if not signature_header.startswith(_PREFIX):
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len(_PREFIX):].lower(), expected)


class SignatureVerifier:
    """Per-provider verifier bound to one (possibly absent) secret."""

    def __init__(self, provider: str, secret: str | None) -> None:
        self.provider = provider
        self._secret = secret or None
        self.mode = VerificationMode.VERIFIED if self._secret else VerificationMode.UNVERIFIED
        if self.mode is VerificationMode.UNVERIFIED:
            logger.warning(
                "No webhook secret configured for %s; signatures will not be verified",
                provider,
            )

    def verify(self, signature_header: str | None, raw_body: bytes) -> bool:
        return verify_signature(self._secret, signature_header, raw_body)
