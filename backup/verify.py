"""Hash-based verification of copied trees."""
from __future__ import annotations

import csv
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from audit.ledger import AuditLedger
from audit.records import CSV_FIELDS, AuditAction, AuditRecord, AuditStatus
from robust import passes_filters

from .hashing import file_digest, normalize_algorithm

LOGGER = logging.getLogger("winbackup.backup.verify")


@dataclass(slots=True)
class VerificationResult:
    algorithm: str
    checked: int = 0
    ok: int = 0
    mismatched: int = 0
    missing: int = 0
    errors: int = 0
    skipped: bool = False
    records: List[AuditRecord] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not (self.mismatched or self.missing or self.errors)

    def merge(self, other: "VerificationResult") -> None:
        self.checked += other.checked
        self.ok += other.ok
        self.mismatched += other.mismatched
        self.missing += other.missing
        self.errors += other.errors
        self.records.extend(other.records)

    def as_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "checked": self.checked,
            "ok": self.ok,
            "mismatched": self.mismatched,
            "missing": self.missing,
            "errors": self.errors,
            "skipped": self.skipped,
            "passed": self.passed,
        }


def _iter_source_files(source_dir: Path, include: Sequence[str], exclude: Sequence[str], recursive: bool):
    base = str(source_dir)
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames.sort()
        if not recursive:
            dirnames[:] = []
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, base).replace(os.sep, "/")
            if passes_filters(rel, include, exclude):
                yield rel, Path(full)


def verify_tree(
    source_dir: Path,
    copy_dir: Path,
    *,
    algorithm: str,
    ledger: AuditLedger,
    include: Sequence[str] = ("*",),
    exclude: Sequence[str] = (),
    recursive: bool = True,
) -> VerificationResult:
    """Hash every filtered file under *source_dir* against its copy under *copy_dir*.

    Emits one Verify record per file: OK when digests match, MISMATCH when
    they differ, MISSING when the copy is absent and ERROR when either side
    cannot be read. Never raises for content problems.
    """

    algorithm = normalize_algorithm(algorithm)
    result = VerificationResult(algorithm=algorithm)
    for rel, source_path in _iter_source_files(Path(source_dir), include, exclude, recursive):
        copy_path = Path(copy_dir) / rel
        result.checked += 1
        detail = ""
        size = 0
        if not copy_path.is_file():
            status = AuditStatus.MISSING
            result.missing += 1
        else:
            try:
                size = copy_path.stat().st_size
                expected = file_digest(source_path, algorithm)
                actual = file_digest(copy_path, algorithm)
            except OSError as exc:
                status = AuditStatus.ERROR
                detail = str(exc)
                result.errors += 1
            else:
                if expected == actual:
                    status = AuditStatus.OK
                    result.ok += 1
                else:
                    status = AuditStatus.MISMATCH
                    detail = f"{algorithm} {expected} != {actual}"
                    result.mismatched += 1
        record = ledger.record(
            AuditAction.VERIFY,
            status,
            source=source_path,
            target=copy_path,
            size_bytes=size,
            detail=detail,
        )
        result.records.append(record)
    LOGGER.info(
        "Verified %s file(s) %s -> %s: ok=%s mismatch=%s missing=%s error=%s",
        result.checked,
        source_dir,
        copy_dir,
        result.ok,
        result.mismatched,
        result.missing,
        result.errors,
    )
    return result


def skipped_verification(algorithm: str, ledger: AuditLedger, *, target: Path, reason: str) -> VerificationResult:
    record = ledger.record(AuditAction.VERIFY, AuditStatus.SKIP, target=target, detail=reason)
    return VerificationResult(algorithm=normalize_algorithm(algorithm), skipped=True, records=[record])


def append_verification(path: Path, records: Sequence[AuditRecord]) -> Optional[Path]:
    """Append verification results to a version's ``.verify.csv`` sidecar."""

    if not records:
        return None
    exists = path.exists()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS)
        if not exists:
            writer.writeheader()
        for record in records:
            writer.writerow(record.as_row())
    return path


__all__ = ["VerificationResult", "append_verification", "skipped_verification", "verify_tree"]
