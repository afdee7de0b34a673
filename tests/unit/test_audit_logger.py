"""Tests for the hash-chained audit logger."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from channelgate.audit.logger import AuditLogger, iter_audit_events, validate_audit_chain
from channelgate.models import AuditEventType
from tests.conftest import make_audit_event


def test_log_appends_json_line(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event(tenant_id="T1"))

    lines = log_file.read_text().strip().split("\n")
    assert len(lines) == 1
    parsed = json.loads(lines[0])
    assert parsed["event_type"] == "webhook_rejected"
    assert parsed["risk_level"] == "high"
    assert parsed["tenant_id"] == "T1"
    assert "T" in parsed["timestamp"]


def test_log_creates_parent_directory(tmp_path: Path) -> None:
    log_file = tmp_path / "nested" / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event())
    assert log_file.exists()


def test_mixed_event_types_are_valid_jsonlines(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))

    logger.log(make_audit_event(event_type=AuditEventType.DELIVERY_ATTEMPT))
    logger.log(make_audit_event(event_type=AuditEventType.VERIFICATION_SUCCEEDED))
    logger.log(make_audit_event(event_type=AuditEventType.ENDPOINT_CHANGED))

    types = [json.loads(line)["event_type"] for line in log_file.read_text().strip().split("\n")]
    assert types == ["delivery_attempt", "verification_succeeded", "endpoint_changed"]


def test_rotation_keeps_backup_count(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file), max_bytes=50, backup_count=2)
    for i in range(30):
        logger.log(make_audit_event(action=f"event-{i}"))

    assert (tmp_path / "audit.jsonl.1").exists()
    assert not (tmp_path / "audit.jsonl.3").exists()


def test_rotation_configurable_via_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AUDIT_LOG_MAX_BYTES", "500")
    monkeypatch.setenv("AUDIT_LOG_BACKUP_COUNT", "7")
    logger = AuditLogger.from_env(str(tmp_path / "audit.jsonl"))
    assert logger._max_bytes == 500
    assert logger._backup_count == 7


def test_chain_links_consecutive_entries(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    logger.log(make_audit_event(action="first"))
    logger.log(make_audit_event(action="second"))

    lines = log_file.read_text().strip().split("\n")
    assert json.loads(lines[0])["prev_hash"] is None
    assert json.loads(lines[1])["prev_hash"] == hashlib.sha256(lines[0].encode()).hexdigest()


def test_chain_continues_across_instances(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event(action="first"))
    AuditLogger(log_path=str(log_file)).log(make_audit_event(action="second"))

    assert validate_audit_chain(log_file).valid


def test_validate_chain_detects_tampering(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    for i in range(5):
        logger.log(make_audit_event(action=f"event-{i}"))
    assert validate_audit_chain(log_file).valid

    lines = log_file.read_text().strip().split("\n")
    lines[2] = lines[2].replace("event-2", "TAMPERED")
    log_file.write_text("\n".join(lines) + "\n")

    result = validate_audit_chain(log_file)
    assert not result.valid
    assert result.broken_at_line == 4


def test_validate_chain_flags_garbage_line(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    logger.log(make_audit_event(action="first"))
    with open(log_file, "a") as f:
        f.write("not json\n")

    result = validate_audit_chain(log_file)
    assert not result.valid
    assert result.broken_at_line == 2


def test_validate_missing_file_is_empty_chain(tmp_path: Path) -> None:
    result = validate_audit_chain(tmp_path / "absent.jsonl")
    assert result.valid
    assert result.entries == 0


def test_iter_audit_events_filters(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    logger.log(make_audit_event(tenant_id="T1", action="a"))
    logger.log(make_audit_event(
        tenant_id="T2", action="b", event_type=AuditEventType.DELIVERY_ATTEMPT,
    ))
    logger.log(make_audit_event(
        tenant_id="T1", action="c", event_type=AuditEventType.DELIVERY_ATTEMPT,
    ))

    assert [e["action"] for e in iter_audit_events(log_file, tenant_id="T1")] == ["a", "c"]
    by_type = iter_audit_events(log_file, event_type="delivery_attempt")
    assert [e["action"] for e in by_type] == ["b", "c"]


def test_rotated_segment_starts_fresh_chain(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file), max_bytes=50, backup_count=2)
    for i in range(3):
        logger.log(make_audit_event(action=f"event-{i}"))

    assert validate_audit_chain(log_file).valid
    assert validate_audit_chain(tmp_path / "audit.jsonl.1").valid
