"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from core.settings import DEFAULT_EXCLUDE_PATTERNS

MANIFEST_FORMAT = 1


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """Single file physically present in a version."""

    relative_path: str
    size_bytes: int
    modified_utc: str


@dataclass(slots=True)
class Manifest:
    set_name: str
    source: str
    version_path: str
    identifier: str
    created_utc: str
    include: List[str]
    exclude: List[str]
    copy_exit_code: int
    dry_run: bool
    verify_requested: bool
    checksum_algorithm: str
    threads: int
    retries: int
    wait_seconds: float
    copy_engine: str = "native"
    app_version: str = ""
    stats: Dict[str, int] = field(default_factory=dict)
    format: int = MANIFEST_FORMAT

    def as_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "app_version": self.app_version,
            "set_name": self.set_name,
            "source": self.source,
            "version_path": self.version_path,
            "identifier": self.identifier,
            "created_utc": self.created_utc,
            "include": list(self.include),
            "exclude": list(self.exclude),
            "copy_engine": self.copy_engine,
            "copy_exit_code": int(self.copy_exit_code),
            "dry_run": bool(self.dry_run),
            "verify_requested": bool(self.verify_requested),
            "checksum_algorithm": self.checksum_algorithm,
            "threads": int(self.threads),
            "retries": int(self.retries),
            "wait_seconds": float(self.wait_seconds),
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        return cls(
            set_name=str(data.get("set_name") or ""),
            source=str(data.get("source") or ""),
            version_path=str(data.get("version_path") or ""),
            identifier=str(data.get("identifier") or ""),
            created_utc=str(data.get("created_utc") or ""),
            include=[str(item) for item in data.get("include") or []],
            exclude=[str(item) for item in data.get("exclude") or []],
            copy_exit_code=int(data.get("copy_exit_code") or 0),
            dry_run=bool(data.get("dry_run")),
            verify_requested=bool(data.get("verify_requested")),
            checksum_algorithm=str(data.get("checksum_algorithm") or "SHA256"),
            threads=int(data.get("threads") or 1),
            retries=int(data.get("retries") or 0),
            wait_seconds=float(data.get("wait_seconds") or 0),
            copy_engine=str(data.get("copy_engine") or "native"),
            app_version=str(data.get("app_version") or ""),
            stats={str(key): int(value) for key, value in (data.get("stats") or {}).items()},
            format=int(data.get("format") or MANIFEST_FORMAT),
        )


def _section(settings: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = settings.get(key) if isinstance(settings, Mapping) else None
    return value if isinstance(value, Mapping) else {}


def _str_list(value: Any, default: Sequence[str]) -> Tuple[str, ...]:
    if value is None:
        return tuple(default)
    if isinstance(value, str):
        value = [value]
    return tuple(str(item).strip() for item in value if str(item).strip())


@dataclass(frozen=True, slots=True)
class BackupConfig:
    """Explicit engine configuration handed to every component of a run."""

    retention_days: int = 30
    retention_versions: int = 20
    verify_checksum: bool = False
    checksum_algorithm: str = "SHA256"
    include: Tuple[str, ...] = ("*",)
    exclude: Tuple[str, ...] = tuple(DEFAULT_EXCLUDE_PATTERNS)
    engine: str = "native"
    robocopy_path: str = "robocopy"
    threads: int = 8
    retries: int = 3
    wait_seconds: float = 5.0
    timestamp_tolerance_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]]) -> "BackupConfig":
        backup = _section(settings or {}, "backup")
        copy = _section(backup, "copy")
        defaults = cls()
        return cls(
            retention_days=int(backup.get("retention_days", defaults.retention_days)),
            retention_versions=int(backup.get("retention_versions", defaults.retention_versions)),
            verify_checksum=bool(backup.get("verify_checksum", defaults.verify_checksum)),
            checksum_algorithm=str(backup.get("checksum_algorithm") or defaults.checksum_algorithm),
            include=_str_list(backup.get("include"), defaults.include) or ("*",),
            exclude=_str_list(backup.get("exclude"), defaults.exclude),
            engine=str(copy.get("engine") or defaults.engine).lower(),
            robocopy_path=str(copy.get("robocopy_path") or defaults.robocopy_path),
            threads=max(1, int(copy.get("threads", defaults.threads))),
            retries=max(0, int(copy.get("retries", defaults.retries))),
            wait_seconds=max(0.0, float(copy.get("wait_seconds", defaults.wait_seconds))),
            timestamp_tolerance_s=max(0.0, float(copy.get("timestamp_tolerance_s", defaults.timestamp_tolerance_s))),
        )

    def with_overrides(self, **overrides: Any) -> "BackupConfig":
        """Return a copy with every non-``None`` override applied."""

        values = {key: value for key, value in overrides.items() if value is not None}
        for key in ("include", "exclude"):
            if key in values:
                values[key] = _str_list(values[key], ())
        if "include" in values and not values["include"]:
            values["include"] = ("*",)
        if "threads" in values:
            values["threads"] = max(1, int(values["threads"]))
        if "retries" in values:
            values["retries"] = max(0, int(values["retries"]))
        if "wait_seconds" in values:
            values["wait_seconds"] = max(0.0, float(values["wait_seconds"]))
        return replace(self, **values)


@dataclass(slots=True)
class BackupRequest:
    source: Path
    root: Path
    set_name: str
    retention_days: Optional[int] = None
    retention_versions: Optional[int] = None
    verify_checksum: Optional[bool] = None
    checksum_algorithm: Optional[str] = None
    threads: Optional[int] = None
    retries: Optional[int] = None
    wait_seconds: Optional[float] = None
    include: Optional[Sequence[str]] = None
    exclude: Optional[Sequence[str]] = None
    dry_run: bool = False
    schedule: Optional[str] = None
    task_name: Optional[str] = None


@dataclass(slots=True)
class SyncRequest:
    source: Path
    destination: Path
    mirror: bool = True
    verify_checksum: Optional[bool] = None
    checksum_algorithm: Optional[str] = None
    threads: Optional[int] = None
    retries: Optional[int] = None
    wait_seconds: Optional[float] = None
    include: Optional[Sequence[str]] = None
    exclude: Optional[Sequence[str]] = None
    dry_run: bool = False


@dataclass(slots=True)
class RestoreRequest:
    root: Path
    set_name: str
    target: Path
    identifier: Optional[str] = None
    subpaths: Sequence[str] = ()
    verify_checksum: Optional[bool] = None
    checksum_algorithm: Optional[str] = None
    threads: Optional[int] = None
    retries: Optional[int] = None
    wait_seconds: Optional[float] = None
    exclude: Optional[Sequence[str]] = None
    dry_run: bool = False


@dataclass(slots=True)
class LogRotationRequest:
    log_dir: Path
    root: Path
    set_name: str
    patterns: Optional[Sequence[str]] = None
    min_age_days: Optional[float] = None
    remove_originals: Optional[bool] = None
    retention_days: Optional[int] = None
    retention_versions: Optional[int] = None
    checksum_algorithm: Optional[str] = None
    dry_run: bool = False


@dataclass(slots=True)
class RunArtifacts:
    directory: Path
    copy_log: Optional[Path] = None
    manifest: Optional[Path] = None
    catalog: Optional[Path] = None
    audit_csv: Optional[Path] = None
    audit_json: Optional[Path] = None
    report: Optional[Path] = None

    def existing(self) -> List[Path]:
        items = [self.copy_log, self.manifest, self.catalog, self.audit_csv, self.audit_json, self.report]
        return [path for path in items if path is not None]


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    freed_bytes: int = 0
    dry_run: bool = False


@dataclass(slots=True)
class RunResult:
    """Outcome of a pipeline; inspect ``summary`` for content-level failures."""

    kind: str
    status: str
    artifacts: RunArtifacts
    summary: Any = None
    error: Optional[str] = None
    version: Any = None
    manifest: Optional[Manifest] = None
    catalog: List[CatalogEntry] = field(default_factory=list)
    copy: Any = None
    verification: Any = None
    retention: Optional[RetentionSummary] = None
    report: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "status": self.status,
            "error": self.error,
            "artifacts": {
                "directory": str(self.artifacts.directory),
                "files": [str(path) for path in self.artifacts.existing()],
            },
            "summary": self.summary.as_dict() if self.summary is not None else None,
            "version": None,
            "copy": None,
            "verification": self.verification.as_dict() if self.verification is not None else None,
            "retention": None,
        }
        if self.version is not None:
            payload["version"] = {"identifier": self.version.identifier, "path": str(self.version.path)}
        if self.copy is not None:
            payload["copy"] = {"exit_code": self.copy.exit_code, "status": self.copy.status, **self.copy.stats.as_dict()}
        if self.retention is not None:
            payload["retention"] = {
                "removed": list(self.retention.removed),
                "kept": list(self.retention.kept),
                "failed": list(self.retention.failed),
                "freed_bytes": self.retention.freed_bytes,
                "dry_run": self.retention.dry_run,
            }
        return payload


__all__ = [
    "BackupConfig",
    "BackupRequest",
    "CatalogEntry",
    "LogRotationRequest",
    "Manifest",
    "RestoreRequest",
    "RetentionSummary",
    "RunArtifacts",
    "RunResult",
    "SyncRequest",
]
