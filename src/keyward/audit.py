"""
Keyward audit log

Append-only record of lifecycle events. One JSON object per line:

    {"timestamp": "...", "event": "offboard", "principal": "alice",
     "key_fingerprint": "3f2a...", "outcome": "partial", "details": {...}}

Entries are only ever appended, under an exclusive lock, and flushed to
disk before append() returns. Nothing here rewrites or reorders the file.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List

from .filelock import FileLock, LockError
from .logging import get_logger


logger = get_logger()


class AuditError(Exception):
    """Raised when an audit entry cannot be written"""
    pass


class AuditEvent(Enum):
    INIT = "init"
    ONBOARD = "onboard"
    OFFBOARD = "offboard"
    ROTATE = "rotate"
    RECONCILE = "reconcile"


class AuditOutcome(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record."""
    event: AuditEvent
    principal: str
    key_fingerprint: str = ""
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().astimezone().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event": self.event.value,
            "principal": self.principal,
            "key_fingerprint": self.key_fingerprint,
            "outcome": self.outcome.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            event=AuditEvent(data["event"]),
            principal=data.get("principal", ""),
            key_fingerprint=data.get("key_fingerprint", ""),
            outcome=AuditOutcome(data.get("outcome", "success")),
            details=data.get("details") or {},
            timestamp=data["timestamp"],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)


class AuditLog:
    """
    JSON-lines audit log.

    Usage:
        log = AuditLog(project / ".keyward" / "audit.log")
        log.append(AuditEntry(AuditEvent.ONBOARD, "alice", fingerprint(key)))
        for entry in log.tail(10):
            print(entry.timestamp, entry.event.value, entry.principal)
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    def append(self, entry: AuditEntry) -> None:
        """
        Append one entry.

        Raises:
            AuditError: If the entry could not be written
        """
        line = entry.to_json() + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(self.lock_path, timeout=self.lock_timeout, owner="audit"):
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
        except (OSError, LockError) as e:
            raise AuditError(f"Could not append to audit log {self.path}: {e}")

    def entries(self) -> Iterator[AuditEntry]:
        """Iterate entries oldest first; unreadable lines are skipped."""
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield AuditEntry.from_dict(json.loads(line))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping unreadable audit line {number}: {e}")

    def tail(self, n: int = 20) -> List[AuditEntry]:
        entries = list(self.entries())
        return entries[-n:] if n > 0 else []

    def __len__(self) -> int:
        return sum(1 for _ in self.entries())


class MemoryAuditLog(AuditLog):
    """Audit log kept in memory, for tests and embedding; nothing touches `path`."""

    def __init__(self, lock_timeout: float = 10.0):
        super().__init__(Path(os.devnull), lock_timeout=lock_timeout)
        self.records: List[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self.records.append(entry)

    def entries(self) -> Iterator[AuditEntry]:
        return iter(list(self.records))
