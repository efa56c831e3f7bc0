"""Timestamp-addressed version directories for backup sets.

Layout: ``<root>/<set>/<yyyy>/<mm>/<dd>/<HHMMSS>[-NN]/`` with sibling metadata
files ``<HHMMSS>.manifest.json``, ``<HHMMSS>.catalog.csv`` and
``<HHMMSS>.verify.csv`` beside each version directory. Identifiers use UTC so
that the lexicographic order of identifiers equals chronological order.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, List, Optional, Set

from robust import remove_tree

from .errors import DeletionError, ValidationError

LOGGER = logging.getLogger("winbackup.backup.versions")

SET_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_YEAR = re.compile(r"^\d{4}$")
_TWO = re.compile(r"^\d{2}$")
_TIME = re.compile(r"^(\d{6})(?:-(\d{2}))?$")
_MAX_SUFFIX = 99

MANIFEST_SUFFIX = ".manifest.json"
CATALOG_SUFFIX = ".catalog.csv"
VERIFY_SUFFIX = ".verify.csv"


def validate_set_name(name: str) -> str:
    text = str(name or "").strip()
    if not SET_NAME_PATTERN.match(text):
        raise ValidationError(f"Invalid backup set name {name!r}: only letters, digits, '_' and '-' are allowed")
    return text


def set_directory(root: Path, set_name: str) -> Path:
    return Path(root) / validate_set_name(set_name)


def parse_identifier(identifier: str) -> datetime:
    """Return the UTC timestamp encoded in ``yyyy/mm/dd/HHMMSS[-NN]``."""

    parts = identifier.replace("\\", "/").strip("/").split("/")
    if len(parts) != 4:
        raise ValueError(f"not a version identifier: {identifier!r}")
    year, month, day, clock = parts
    match = _TIME.match(clock)
    if not (_YEAR.match(year) and _TWO.match(month) and _TWO.match(day) and match):
        raise ValueError(f"not a version identifier: {identifier!r}")
    stamp = datetime.strptime(f"{year}{month}{day}{match.group(1)}", "%Y%m%d%H%M%S")
    return stamp.replace(tzinfo=timezone.utc)


def format_identifier(moment: datetime, suffix: int = 0) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    clock = moment.strftime("%H%M%S")
    if suffix:
        clock = f"{clock}-{suffix:02d}"
    return f"{moment:%Y}/{moment:%m}/{moment:%d}/{clock}"


@dataclass(frozen=True, slots=True)
class Version:
    set_name: str
    identifier: str
    path: Path
    timestamp: datetime

    @property
    def manifest_path(self) -> Path:
        return self.path.with_name(self.path.name + MANIFEST_SUFFIX)

    @property
    def catalog_path(self) -> Path:
        return self.path.with_name(self.path.name + CATALOG_SUFFIX)

    @property
    def verify_path(self) -> Path:
        return self.path.with_name(self.path.name + VERIFY_SUFFIX)

    @property
    def sidecars(self) -> List[Path]:
        return [self.manifest_path, self.catalog_path, self.verify_path]


def _sorted_dirs(base: Path, pattern: re.Pattern[str]) -> List[Path]:
    try:
        entries = [entry for entry in base.iterdir() if entry.is_dir() and pattern.match(entry.name)]
    except FileNotFoundError:
        return []
    return sorted(entries, key=lambda entry: entry.name)


def list_versions(root: Path, set_name: str) -> List[Version]:
    """Enumerate versions of *set_name*, oldest first. Never creates anything."""

    base = set_directory(root, set_name)
    versions: List[Version] = []
    for year in _sorted_dirs(base, _YEAR):
        for month in _sorted_dirs(year, _TWO):
            for day in _sorted_dirs(month, _TWO):
                for clock in _sorted_dirs(day, _TIME):
                    identifier = f"{year.name}/{month.name}/{day.name}/{clock.name}"
                    try:
                        timestamp = parse_identifier(identifier)
                    except ValueError:
                        continue
                    versions.append(
                        Version(set_name=set_name, identifier=identifier, path=clock, timestamp=timestamp)
                    )
    versions.sort(key=lambda item: item.identifier)
    return versions


def find_version(root: Path, set_name: str, identifier: Optional[str] = None) -> Version:
    """Return the requested version, or the most recent one when *identifier* is omitted."""

    versions = list_versions(root, set_name)
    if not versions:
        raise ValidationError(f"Backup set {set_name!r} has no versions under {root}")
    if identifier is None:
        return versions[-1]
    wanted = identifier.replace("\\", "/").strip("/")
    for version in versions:
        if version.identifier == wanted:
            return version
    raise ValidationError(f"Version {identifier!r} not found in backup set {set_name!r}")


def version_size(version: Version) -> int:
    total = 0
    for dirpath, _dirs, files in os.walk(version.path):
        for name in files:
            try:
                total += os.stat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def remove_version(version: Version, *, set_root: Optional[Path] = None) -> None:
    """Delete a version directory, its sidecars and any emptied date folders."""

    try:
        if version.path.exists():
            remove_tree(version.path)
        for sidecar in version.sidecars:
            sidecar.unlink(missing_ok=True)
    except OSError as exc:
        raise DeletionError(f"Cannot remove version {version.identifier}: {exc}") from exc
    stop = set_root if set_root is not None else version.path.parents[3]
    parent = version.path.parent
    while parent != stop and stop in parent.parents:
        try:
            parent.rmdir()
        except OSError:
            break
        parent = parent.parent


class VersionAllocator:
    """Hand out unique version directories for backup sets.

    Uniqueness of created versions is guaranteed within the process; a
    planned (``create=False``) allocation reserves nothing. Two processes
    allocating for the same set within the same second fall back to the
    on-disk existence check only.
    """

    _allocated: Set[str] = set()
    _lock = Lock()

    def __init__(self, root: Path, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._root = Path(root)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def root(self) -> Path:
        return self._root

    def allocate(self, set_name: str, *, now: Optional[datetime] = None, create: bool = True) -> Version:
        name = validate_set_name(set_name)
        set_root = self._root / name
        if create:
            try:
                set_root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ValidationError(f"Cannot create backup set root {set_root}: {exc}") from exc
        moment = now or self._clock()
        with self._lock:
            for suffix in range(_MAX_SUFFIX + 1):
                identifier = format_identifier(moment, suffix)
                path = set_root.joinpath(*identifier.split("/"))
                key = os.path.abspath(path)
                if key in self._allocated or path.exists() or path.with_name(path.name + MANIFEST_SUFFIX).exists():
                    continue
                if create:
                    try:
                        path.mkdir(parents=True, exist_ok=False)
                    except FileExistsError:
                        continue
                    except OSError as exc:
                        raise ValidationError(f"Cannot create version directory {path}: {exc}") from exc
                    self._allocated.add(key)
                LOGGER.info("Allocated version %s for set %s", identifier, name)
                return Version(
                    set_name=name,
                    identifier=identifier,
                    path=path,
                    timestamp=parse_identifier(identifier),
                )
        raise ValidationError(f"Exhausted version identifiers for set {name!r} at {format_identifier(moment)}")


__all__ = [
    "CATALOG_SUFFIX",
    "MANIFEST_SUFFIX",
    "SET_NAME_PATTERN",
    "VERIFY_SUFFIX",
    "Version",
    "VersionAllocator",
    "find_version",
    "format_identifier",
    "list_versions",
    "parse_identifier",
    "remove_version",
    "set_directory",
    "validate_set_name",
    "version_size",
]
