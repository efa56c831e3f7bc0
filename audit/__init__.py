"""Audit trail for backup, restore and retention runs."""

from .exports import AuditExportResult, export_ledger
from .ledger import AuditLedger, LedgerClosedError
from .records import AuditAction, AuditRecord, AuditStatus
from .summary import AuditSummary, summarize

__all__ = [
    "AuditAction",
    "AuditExportResult",
    "AuditLedger",
    "AuditRecord",
    "AuditStatus",
    "AuditSummary",
    "LedgerClosedError",
    "export_ledger",
    "summarize",
]
