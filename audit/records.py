"""Audit record types shared by every engine component."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Mapping


class AuditAction(str, Enum):
    VERSION_CREATED = "VersionCreated"
    COPY = "Copy"
    DELETE = "Delete"
    VERIFY = "Verify"
    RETENTION_AGE = "RetentionAge"
    RETENTION_COUNT = "RetentionCount"
    RESTORE = "Restore"
    SCHEDULE_REGISTER = "ScheduleRegister"
    ERROR = "Error"


class AuditStatus(str, Enum):
    OK = "OK"
    MISMATCH = "MISMATCH"
    MISSING = "MISSING"
    ERROR = "ERROR"
    DRYRUN = "DRYRUN"
    SKIP = "SKIP"


_S = AuditStatus

# Statuses each action may carry. Every action must be listed.
ALLOWED_STATUSES: Mapping[AuditAction, FrozenSet[AuditStatus]] = {
    AuditAction.VERSION_CREATED: frozenset({_S.OK, _S.DRYRUN, _S.ERROR}),
    AuditAction.COPY: frozenset({_S.OK, _S.ERROR, _S.DRYRUN, _S.SKIP, _S.MISMATCH}),
    AuditAction.DELETE: frozenset({_S.OK, _S.ERROR, _S.DRYRUN}),
    AuditAction.VERIFY: frozenset({_S.OK, _S.MISMATCH, _S.MISSING, _S.ERROR, _S.SKIP}),
    AuditAction.RETENTION_AGE: frozenset({_S.OK, _S.ERROR, _S.DRYRUN}),
    AuditAction.RETENTION_COUNT: frozenset({_S.OK, _S.ERROR, _S.DRYRUN}),
    AuditAction.RESTORE: frozenset({_S.OK, _S.ERROR, _S.DRYRUN, _S.SKIP}),
    AuditAction.SCHEDULE_REGISTER: frozenset({_S.OK, _S.ERROR, _S.DRYRUN}),
    AuditAction.ERROR: frozenset({_S.ERROR}),
}

CSV_FIELDS = ["timestamp", "action", "status", "source", "target", "size_bytes", "detail"]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class AuditRecord:
    """One engine action and its outcome.

    ``action`` and ``status`` together form a tagged variant; combinations
    outside :data:`ALLOWED_STATUSES` are rejected at construction time.
    """

    action: AuditAction
    status: AuditStatus
    source: str = ""
    target: str = ""
    size_bytes: int = 0
    detail: str = ""
    timestamp: str = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        action = AuditAction(self.action)
        status = AuditStatus(self.status)
        if status not in ALLOWED_STATUSES[action]:
            raise ValueError(f"status {status.value} is not valid for action {action.value}")
        object.__setattr__(self, "action", action)
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "source", str(self.source or ""))
        object.__setattr__(self, "target", str(self.target or ""))
        object.__setattr__(self, "size_bytes", int(self.size_bytes or 0))

    def as_row(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "action": self.action.value,
            "status": self.status.value,
            "source": self.source,
            "target": self.target,
            "size_bytes": self.size_bytes,
            "detail": self.detail,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "AuditRecord":
        return cls(
            action=AuditAction(str(row["action"])),
            status=AuditStatus(str(row["status"])),
            source=str(row.get("source") or ""),
            target=str(row.get("target") or ""),
            size_bytes=int(row.get("size_bytes") or 0),
            detail=str(row.get("detail") or ""),
            timestamp=str(row.get("timestamp") or _utcnow()),
        )


__all__ = ["ALLOWED_STATUSES", "CSV_FIELDS", "AuditAction", "AuditRecord", "AuditStatus"]
