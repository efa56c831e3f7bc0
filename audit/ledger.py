"""Append-only in-process audit ledger."""
from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List, Optional, Tuple

from .records import AuditAction, AuditRecord, AuditStatus

LOGGER = logging.getLogger("winbackup.audit.ledger")


class LedgerClosedError(RuntimeError):
    """Raised when appending to a ledger that has already been exported."""


class AuditLedger:
    """Collect :class:`AuditRecord` entries for a single pipeline run.

    Appends are thread-safe because the copy engine reports per-file outcomes
    from its worker pool. Once :meth:`close` is called the ledger is frozen.
    """

    def __init__(self) -> None:
        self._records: List[AuditRecord] = []
        self._lock = Lock()
        self._closed = False

    def append(self, record: AuditRecord) -> AuditRecord:
        with self._lock:
            if self._closed:
                raise LedgerClosedError("audit ledger already exported")
            self._records.append(record)
        LOGGER.debug(
            "%s %s %s -> %s",
            record.action.value,
            record.status.value,
            record.source,
            record.target,
        )
        return record

    def record(
        self,
        action: AuditAction,
        status: AuditStatus,
        *,
        source: object = "",
        target: object = "",
        size_bytes: int = 0,
        detail: str = "",
    ) -> AuditRecord:
        return self.append(
            AuditRecord(
                action=action,
                status=status,
                source=str(source or ""),
                target=str(target or ""),
                size_bytes=size_bytes,
                detail=detail,
            )
        )

    def error(self, detail: str, *, source: object = "", target: object = "") -> AuditRecord:
        return self.record(AuditAction.ERROR, AuditStatus.ERROR, source=source, target=target, detail=detail)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def records(self, action: Optional[AuditAction] = None) -> Tuple[AuditRecord, ...]:
        with self._lock:
            items = tuple(self._records)
        if action is None:
            return items
        return tuple(record for record in items if record.action == action)

    def status_counts(self, action: Optional[AuditAction] = None) -> Dict[AuditStatus, int]:
        counts: Dict[AuditStatus, int] = {}
        for record in self.records(action):
            counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = ["AuditLedger", "LedgerClosedError"]
