"""Catalog and manifest documents for completed versions."""
from __future__ import annotations

import csv
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Sequence

from api import __version__ as APP_VERSION

from .transfer import CopyAction, CopyOptions, CopyResult
from .types import CatalogEntry, Manifest

LOGGER = logging.getLogger("winbackup.backup.catalog")

CATALOG_FIELDS = ["relative_path", "size_bytes", "modified_utc"]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_mtime(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def build_catalog(version_dir: Path) -> List[CatalogEntry]:
    """Enumerate every file under *version_dir*; a missing directory yields an empty catalog."""

    entries: List[CatalogEntry] = []
    base = str(version_dir)
    if not os.path.isdir(base):
        return entries
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames.sort()
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            try:
                stat = os.stat(full)
            except OSError as exc:
                LOGGER.warning("Cannot stat %s while cataloging: %s", full, exc)
                continue
            rel = os.path.relpath(full, base).replace(os.sep, "/")
            entries.append(CatalogEntry(relative_path=rel, size_bytes=int(stat.st_size), modified_utc=_iso_mtime(stat.st_mtime)))
    entries.sort(key=lambda entry: entry.relative_path)
    return entries


def planned_catalog(result: CopyResult) -> List[CatalogEntry]:
    """Catalog of the files a simulated copy would have placed in the version."""

    entries: List[CatalogEntry] = []
    for decision in result.decisions:
        if decision.outcome != "dryrun" or decision.action not in (CopyAction.COPY, CopyAction.UPDATE):
            continue
        modified = ""
        if decision.source is not None:
            try:
                modified = _iso_mtime(os.stat(decision.source).st_mtime)
            except OSError as exc:
                LOGGER.debug("Cannot stat %s for planned catalog: %s", decision.source, exc)
        entries.append(CatalogEntry(decision.relative_path, decision.size_bytes, modified))
    entries.sort(key=lambda entry: entry.relative_path)
    return entries


def write_catalog(path: Path, entries: Sequence[CatalogEntry]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=CATALOG_FIELDS)
        writer.writeheader()
        for entry in entries:
            writer.writerow(
                {
                    "relative_path": entry.relative_path,
                    "size_bytes": entry.size_bytes,
                    "modified_utc": entry.modified_utc,
                }
            )
    return path


def read_catalog(path: Path) -> List[CatalogEntry]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return [
            CatalogEntry(
                relative_path=row["relative_path"],
                size_bytes=int(row["size_bytes"] or 0),
                modified_utc=row["modified_utc"],
            )
            for row in csv.DictReader(handle)
        ]


def build_manifest(
    *,
    set_name: str,
    source: Path,
    version_path: Path,
    identifier: str,
    options: CopyOptions,
    copy_result: CopyResult,
    verify_requested: bool,
    checksum_algorithm: str,
) -> Manifest:
    return Manifest(
        set_name=set_name,
        source=str(source),
        version_path=str(version_path),
        identifier=identifier,
        created_utc=_utcnow(),
        include=list(options.include),
        exclude=list(options.exclude),
        copy_exit_code=copy_result.exit_code,
        dry_run=options.simulate,
        verify_requested=verify_requested,
        checksum_algorithm=checksum_algorithm,
        threads=options.threads,
        retries=options.retries,
        wait_seconds=options.wait_seconds,
        copy_engine=copy_result.engine,
        app_version=APP_VERSION,
        stats=copy_result.stats.as_dict(),
    )


def write_manifest(path: Path, manifest: Manifest) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(manifest.as_dict(), handle, indent=2, sort_keys=True)
    return path


def read_manifest(path: Path) -> Manifest:
    with path.open("r", encoding="utf-8") as handle:
        return Manifest.from_dict(json.load(handle))


__all__ = [
    "CATALOG_FIELDS",
    "build_catalog",
    "build_manifest",
    "planned_catalog",
    "read_catalog",
    "read_manifest",
    "write_catalog",
    "write_manifest",
]
