"""Retention policy enforcement for backup sets."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus

from .errors import DeletionError
from .logs import BackupLogger
from .types import RetentionSummary
from .versions import Version, list_versions, remove_version, set_directory, version_size

LOGGER = logging.getLogger("winbackup.backup.retention")


@dataclass(slots=True)
class RetentionPolicy:
    max_age_days: int = 30
    max_versions: int = 20


def _remove(
    version: Version,
    action: AuditAction,
    *,
    ledger: AuditLedger,
    summary: RetentionSummary,
    set_root: Path,
    dry_run: bool,
    reason: str,
    logger: Optional[BackupLogger],
) -> bool:
    size = version_size(version)
    if dry_run:
        ledger.record(action, AuditStatus.DRYRUN, target=version.path, size_bytes=size, detail=reason)
        summary.removed.append(version.identifier)
        summary.freed_bytes += size
        return True
    try:
        remove_version(version, set_root=set_root)
    except DeletionError as exc:
        LOGGER.warning("Retention could not remove %s: %s", version.path, exc)
        ledger.record(action, AuditStatus.ERROR, target=version.path, size_bytes=size, detail=f"DeletionError: {exc}")
        summary.failed.append(version.identifier)
        if logger is not None:
            logger.warning("version_remove_failed", id=version.identifier, error=str(exc))
        return False
    ledger.record(action, AuditStatus.OK, target=version.path, size_bytes=size, detail=reason)
    summary.removed.append(version.identifier)
    summary.freed_bytes += size
    if logger is not None:
        logger.info("version_removed", id=version.identifier, reason=reason)
    return True


def _with_pending(versions: List[Version], pending: Optional[Version]) -> List[Version]:
    if pending is None or any(version.identifier == pending.identifier for version in versions):
        return versions
    return sorted([*versions, pending], key=lambda item: item.identifier)


def apply_retention(
    root: Path,
    set_name: str,
    policy: RetentionPolicy,
    *,
    ledger: AuditLedger,
    dry_run: bool = False,
    now: Optional[datetime] = None,
    logger: Optional[BackupLogger] = None,
    pending: Optional[Version] = None,
) -> RetentionSummary:
    """Run the age pass and then the count pass over *set_name*.

    The age pass removes every version strictly older than
    ``now - max_age_days``. The count pass re-enumerates the set and removes
    the oldest versions beyond ``max_versions``. A threshold of zero or less
    disables its pass. Versions that could not be deleted stay on disk for the
    next run and are left out of the count pass.

    A dry run passes the version it would have created as *pending* so the
    count pass sees the set as the real run would.
    """

    set_root = set_directory(root, set_name)
    moment = now or datetime.now(timezone.utc)
    summary = RetentionSummary(dry_run=dry_run)
    failed: set[str] = set()

    if policy.max_age_days > 0:
        cutoff = moment - timedelta(days=policy.max_age_days)
        for version in list_versions(root, set_name):
            if version.timestamp < cutoff:
                if not _remove(
                    version,
                    AuditAction.RETENTION_AGE,
                    ledger=ledger,
                    summary=summary,
                    set_root=set_root,
                    dry_run=dry_run,
                    reason=f"older than {policy.max_age_days} day(s)",
                    logger=logger,
                ):
                    failed.add(version.identifier)

    current = _with_pending(list_versions(root, set_name), pending if dry_run else None)
    remaining: List[Version] = [
        version
        for version in current
        if version.identifier not in failed and version.identifier not in summary.removed
    ]
    if policy.max_versions > 0 and len(remaining) > policy.max_versions:
        excess = remaining[: len(remaining) - policy.max_versions]
        for version in excess:
            _remove(
                version,
                AuditAction.RETENTION_COUNT,
                ledger=ledger,
                summary=summary,
                set_root=set_root,
                dry_run=dry_run,
                reason=f"beyond newest {policy.max_versions} version(s)",
                logger=logger,
            )

    summary.kept = [
        version.identifier
        for version in _with_pending(list_versions(root, set_name), pending if dry_run else None)
        if version.identifier not in summary.removed
    ]
    if logger is not None:
        logger.event(
            event="retention_applied",
            phase="retention",
            ok=not summary.failed,
            set=set_name,
            removed=len(summary.removed),
            kept=len(summary.kept),
            failed=len(summary.failed),
            dry_run=dry_run,
        )
    return summary


__all__ = ["RetentionPolicy", "apply_retention"]
