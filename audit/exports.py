"""CSV and JSON exporters for the run audit trail."""
from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .ledger import AuditLedger
from .records import CSV_FIELDS, AuditRecord
from .summary import AuditSummary, summarize

LOGGER = logging.getLogger("winbackup.audit.exports")


@dataclass(slots=True)
class AuditExportResult:
    directory: Path
    summary: AuditSummary
    files: List[Path] = field(default_factory=list)

    def add(self, path: Path) -> None:
        if path not in self.files:
            self.files.append(path)


def write_csv(path: Path, headers: List[str], rows: Iterable[Dict[str, object]]) -> int:
    count = 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=headers, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
            count += 1
    LOGGER.info("Wrote %s rows to %s", count, path)
    return count


def write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False, default=str)
    LOGGER.info("Wrote JSON payload to %s", path)


def read_audit_csv(path: Path) -> List[AuditRecord]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return [AuditRecord.from_row(row) for row in csv.DictReader(handle)]


def export_ledger(
    ledger: AuditLedger,
    directory: Path,
    *,
    run: Optional[Dict[str, object]] = None,
    stem: str = "audit",
) -> AuditExportResult:
    """Write the ledger as ``<stem>.csv`` and ``<stem>.json`` and close it.

    The JSON document nests the run metadata, the grouped summary and the
    individual records so it can be consumed without the CSV.
    """

    ledger.close()
    records = ledger.records()
    summary = summarize(records)
    result = AuditExportResult(directory=directory, summary=summary)

    csv_path = directory / f"{stem}.csv"
    write_csv(csv_path, list(CSV_FIELDS), (record.as_row() for record in records))
    result.add(csv_path)

    json_path = directory / f"{stem}.json"
    write_json(
        json_path,
        {
            "run": dict(run or {}),
            "summary": summary.as_dict(),
            "records": [record.as_row() for record in records],
        },
    )
    result.add(json_path)
    return result


__all__ = ["AuditExportResult", "export_ledger", "read_audit_csv", "write_csv", "write_json"]
