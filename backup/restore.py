"""Restore versions of a backup set into a target directory."""
from __future__ import annotations

import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from robust import PathEscapeError, safe_relative

from .errors import BackupRestoreError, ValidationError
from .hashing import normalize_algorithm
from .logs import BackupLogger
from .transfer import CopyOptions, CopyResult, DifferentialCopier, record_decisions
from .verify import VerificationResult, skipped_verification, verify_tree
from .versions import Version, find_version

LOGGER = logging.getLogger("winbackup.backup.restore")


@dataclass(slots=True)
class RestoreOutcome:
    version: Version
    target: Path
    copies: List[CopyResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    verification: Optional[VerificationResult] = None

    @property
    def exit_code(self) -> int:
        code = 0
        for result in self.copies:
            code |= result.exit_code
        return code


def normalize_subpaths(subpaths: Sequence[str]) -> List[str]:
    cleaned: List[str] = []
    for value in subpaths:
        try:
            rel = safe_relative(value)
        except PathEscapeError as exc:
            raise ValidationError(f"Invalid restore subpath {value!r}: {exc}") from exc
        if rel and rel not in cleaned:
            cleaned.append(rel)
    return cleaned


def _plan_units(version: Version, target: Path, subpaths: Sequence[str]) -> Tuple[List[tuple], List[str]]:
    """Return ``(source, destination, file_name)`` units and the missing subpaths."""

    if not subpaths:
        return [(version.path, target, None)], []
    units: List[tuple] = []
    missing: List[str] = []
    for rel in subpaths:
        source = version.path / rel
        if source.is_dir():
            units.append((source, target / rel, None))
        elif source.is_file():
            units.append((source.parent, (target / rel).parent, source.name))
        else:
            missing.append(rel)
    return units, missing


def restore_version(
    root: Path,
    set_name: str,
    target: Path,
    *,
    copier: DifferentialCopier,
    options: CopyOptions,
    ledger: AuditLedger,
    identifier: Optional[str] = None,
    subpaths: Sequence[str] = (),
    verify: bool = False,
    algorithm: str = "SHA256",
    log_path: Optional[Path] = None,
    logger: Optional[BackupLogger] = None,
) -> RestoreOutcome:
    """Copy a version (or selected subpaths of it) into *target*.

    The most recent version is used when *identifier* is omitted. Subpaths
    that do not exist in the version are recorded as Restore/SKIP and the
    restore continues with the rest.
    """

    cleaned = normalize_subpaths(subpaths)
    version = find_version(root, set_name, identifier)
    target = Path(target)
    if target.exists() and not target.is_dir():
        raise BackupRestoreError(f"Restore target {target} exists and is not a directory")
    options = options.narrowed(mirror=False)
    outcome = RestoreOutcome(version=version, target=target)

    units, missing = _plan_units(version, target, cleaned)
    for rel in missing:
        LOGGER.warning("Subpath %s not present in version %s", rel, version.identifier)
        ledger.record(
            AuditAction.RESTORE,
            AuditStatus.SKIP,
            source=version.path / rel,
            target=target / rel,
            detail="subpath not present in version",
        )
        outcome.skipped.append(rel)
        if logger is not None:
            logger.warning("restore_subpath_missing", id=version.identifier, path=rel)

    for source, destination, file_name in units:
        unit_options = options
        if file_name is not None:
            unit_options = options.narrowed(include=(glob.escape(file_name),), recursive=False)
        result = copier.run(source, destination, unit_options, log_path=log_path)
        record_decisions(ledger, result, action=AuditAction.RESTORE)
        outcome.copies.append(result)

    if verify:
        if options.simulate:
            outcome.verification = skipped_verification(
                algorithm, ledger, target=target, reason="simulated run"
            )
        else:
            combined = VerificationResult(algorithm=normalize_algorithm(algorithm))
            for source, destination, file_name in units:
                include = (glob.escape(file_name),) if file_name is not None else ("*",)
                combined.merge(
                    verify_tree(
                        source,
                        destination,
                        algorithm=algorithm,
                        ledger=ledger,
                        include=include,
                        exclude=options.exclude,
                        recursive=file_name is None,
                    )
                )
            outcome.verification = combined

    if logger is not None:
        logger.event(
            event="version_restored",
            phase="restore",
            ok=not any(result.failures() for result in outcome.copies),
            id=version.identifier,
            set=set_name,
            target=str(target),
            skipped=len(outcome.skipped),
            dry_run=options.simulate,
        )
    return outcome


__all__ = ["RestoreOutcome", "normalize_subpaths", "restore_version"]
