"""Group audit records and render the plain-text run report."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .records import AuditAction, AuditRecord, AuditStatus

LOGGER = logging.getLogger("winbackup.audit.summary")

FAILURE_STATUSES = (AuditStatus.ERROR, AuditStatus.MISMATCH, AuditStatus.MISSING)


@dataclass(slots=True)
class ActionSummary:
    action: str
    count: int = 0
    total_bytes: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "action": self.action,
            "count": int(self.count),
            "total_bytes": int(self.total_bytes),
            "statuses": dict(sorted(self.statuses.items())),
        }


@dataclass(slots=True)
class AuditSummary:
    generated_utc: str
    actions: List[ActionSummary] = field(default_factory=list)
    total_records: int = 0

    def get(self, action: AuditAction) -> Optional[ActionSummary]:
        for item in self.actions:
            if item.action == action.value:
                return item
        return None

    def status_total(self, status: AuditStatus) -> int:
        return sum(item.statuses.get(status.value, 0) for item in self.actions)

    def failure_count(self, *, ignore: Sequence[AuditAction] = ()) -> int:
        skipped = {action.value for action in ignore}
        return sum(
            item.statuses.get(status.value, 0)
            for item in self.actions
            if item.action not in skipped
            for status in FAILURE_STATUSES
        )

    @property
    def has_failures(self) -> bool:
        return self.failure_count() > 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "generated_utc": self.generated_utc,
            "total_records": int(self.total_records),
            "has_failures": self.has_failures,
            "actions": [item.as_dict() for item in self.actions],
        }


def _now_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def summarize(records: Iterable[AuditRecord]) -> AuditSummary:
    """Group *records* by action tag with count and total size per group."""

    groups: Dict[AuditAction, ActionSummary] = {}
    total = 0
    for record in records:
        total += 1
        item = groups.get(record.action)
        if item is None:
            item = groups[record.action] = ActionSummary(action=record.action.value)
        item.count += 1
        item.total_bytes += record.size_bytes
        item.statuses[record.status.value] = item.statuses.get(record.status.value, 0) + 1
    ordered = [groups[action] for action in AuditAction if action in groups]
    return AuditSummary(generated_utc=_now_utc(), actions=ordered, total_records=total)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"  # pragma: no cover


def render_report(
    *,
    title: str,
    run: Dict[str, object],
    summary: AuditSummary,
    artifacts: Sequence[Path],
    error: Optional[str] = None,
) -> str:
    lines = [title, "=" * len(title), ""]
    for key, value in run.items():
        lines.append(f"{key:<20} {value}")
    lines.append("")
    if error:
        lines.append(f"ABORTED: {error}")
        lines.append("")
    lines.append(f"{'Action':<18} {'Count':>7} {'Size':>12}  Statuses")
    lines.append("-" * 64)
    if not summary.actions:
        lines.append("(no audit records)")
    for item in summary.actions:
        statuses = ", ".join(f"{key}={value}" for key, value in sorted(item.statuses.items()))
        lines.append(f"{item.action:<18} {item.count:>7} {format_bytes(item.total_bytes):>12}  {statuses}")
    lines.append("")
    lines.append("Result: " + ("attention required" if summary.has_failures or error else "OK"))
    lines.append("")
    lines.append("Artifacts:")
    for path in artifacts:
        lines.append(f"  {path}")
    return "\n".join(lines) + "\n"


def write_report(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    LOGGER.info("Wrote run report to %s", path)
    return path


__all__ = ["FAILURE_STATUSES", "ActionSummary", "AuditSummary", "format_bytes", "render_report", "summarize", "write_report"]
