"""Tamper-evident audit trail for gateway traffic.

Events are written as JSON Lines. Every line stores ``prev_hash``, the
SHA-256 of the line before it, so editing or deleting a past entry breaks
the chain from that point on. Files rotate by size; each rotated segment
begins a new chain.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from channelgate.models import AuditEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10_485_760
DEFAULT_BACKUP_COUNT = 5


def _digest(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


def _read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    return [line for line in path.read_text().splitlines() if line.strip()]


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None
    entries: int = 0


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Walk the file and report the first line whose ``prev_hash`` does not match.

    A line that is not valid JSON also counts as a break.
    """
    lines = _read_lines(Path(log_path))
    expected: str | None = None
    for number, line in enumerate(lines, start=1):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return ChainValidationResult(valid=False, broken_at_line=number, entries=len(lines))
        if entry.get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number, entries=len(lines))
        expected = _digest(line)
    return ChainValidationResult(valid=True, entries=len(lines))


def iter_audit_events(
    log_path: Path,
    tenant_id: str | None = None,
    event_type: str | None = None,
) -> Iterator[dict[str, object]]:
    """Yield decoded entries, optionally narrowed to one tenant or event type."""
    for line in _read_lines(Path(log_path)):
        entry = json.loads(line)
        if tenant_id is not None and entry.get("tenant_id") != tenant_id:
            continue
        if event_type is not None and entry.get("event_type") != event_type:
            continue
        yield entry


class AuditLogger:
    """Append-only structured audit trail for webhook traffic and verification.

    Writes are serialized across processes with an ``flock`` on a sidecar
    lock file next to the log.
    """

    def __init__(
        self,
        log_path: str,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._lock_path = self.log_path.parent / f".{self.log_path.name}.lock"
        existing = _read_lines(self.log_path)
        self._prev_hash: str | None = _digest(existing[-1]) if existing else None

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        return cls(
            log_path=log_path,
            max_bytes=int(os.environ.get("AUDIT_LOG_MAX_BYTES", str(DEFAULT_MAX_BYTES))),
            backup_count=int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", str(DEFAULT_BACKUP_COUNT))),
        )

    def _backup_path(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _needs_rotation(self) -> bool:
        return self.log_path.exists() and self.log_path.stat().st_size >= self._max_bytes

    def _rotate(self) -> None:
        self._backup_path(self._backup_count).unlink(missing_ok=True)
        for index in reversed(range(1, self._backup_count)):
            source = self._backup_path(index)
            if source.exists():
                source.rename(self._backup_path(index + 1))
        self.log_path.rename(self._backup_path(1))
        self._prev_hash = None
        logger.info("Rotated audit log %s", self.log_path)

    def _encode(self, event: AuditEvent) -> str:
        record = event.model_dump(mode="json")
        record["prev_hash"] = self._prev_hash
        return json.dumps(record, separators=(",", ":"))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                if self._needs_rotation():
                    self._rotate()
                line = self._encode(event)
                with open(self.log_path, "a") as out:
                    out.write(line + "\n")
                self._prev_hash = _digest(line)
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)
