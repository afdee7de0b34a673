"""Tests for webhook HMAC signatures."""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest

from channelgate.webhook.signature import (
    SignatureVerifier,
    VerificationMode,
    sign_body,
    verify_signature,
)
from tests.conftest import sign_body as reference_sign


class TestSignBody:
    def test_matches_reference_hmac(self) -> None:
        body = b'{"a":1}'
        assert sign_body("s3cret", body) == reference_sign("s3cret", body)

    def test_has_sha256_prefix(self) -> None:
        assert sign_body("k", b"x").startswith("sha256=")


class TestVerifySignature:
    def test_valid_signature_accepted(self) -> None:
        body = b'{"test": "data"}'
        assert verify_signature("my_secret", sign_body("my_secret", body), body) is True

    def test_wrong_signature_rejected(self) -> None:
        assert verify_signature("my_secret", "sha256=" + "0" * 64, b"body") is False

    def test_signature_over_different_bytes_rejected(self) -> None:
        sig = sign_body("k", b'{"a": 1}')
        assert verify_signature("k", sig, b'{"a":1}') is False

    def test_missing_prefix_rejected(self) -> None:
        body = b"body"
        digest = sign_body("k", body).removeprefix("sha256=")
        assert verify_signature("k", digest, body) is False

    def test_missing_header_accepted(self) -> None:
        assert verify_signature("k", None, b"body") is True

    def test_missing_secret_accepted(self) -> None:
        assert verify_signature(None, "sha256=garbage", b"body") is True

    def test_constant_time_comparison(self) -> None:
        body = b"data"
        sig = sign_body("s", body)
        with patch("channelgate.webhook.signature.hmac.compare_digest", return_value=True) as cmp:
            verify_signature("s", sig, body)
            cmp.assert_called_once()


class TestSignatureVerifier:
    def test_mode_verified_with_secret(self) -> None:
        assert SignatureVerifier("whatsapp", "s").mode is VerificationMode.VERIFIED

    def test_mode_unverified_without_secret(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="channelgate.webhook.signature"):
            verifier = SignatureVerifier("email", None)
        assert verifier.mode is VerificationMode.UNVERIFIED
        assert "email" in caplog.text

    def test_empty_secret_is_unverified(self) -> None:
        assert SignatureVerifier("generic", "").mode is VerificationMode.UNVERIFIED

    def test_verify_delegates(self) -> None:
        verifier = SignatureVerifier("whatsapp", "abc")
        body = b"{}"
        assert verifier.verify(sign_body("abc", body), body) is True
        assert verifier.verify("sha256=bad", body) is False
