"""Public API for backup operations."""
from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from audit.exports import export_ledger
from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from audit.summary import AuditSummary, render_report, summarize, write_report
from core.paths import get_runs_dir, resolve_working_dir, safe_label
from core.settings import load_settings
from robust import passes_filters

from .catalog import build_catalog, build_manifest, planned_catalog, read_manifest, write_catalog, write_manifest
from .errors import BackupRestoreError, CopyEngineError, ScheduleRegistrationError, ValidationError
from .hashing import normalize_algorithm
from .logs import BackupLogger
from .restore import normalize_subpaths, restore_version
from .retention import RetentionPolicy, apply_retention
from .schedule import SchtasksRegistrar, ScheduleTrigger, build_invocation, parse_trigger
from .transfer import CopyOptions, CopyResult, DifferentialCopier, check_engine_filters, record_decisions
from .types import (
    BackupConfig,
    BackupRequest,
    LogRotationRequest,
    RestoreRequest,
    RunArtifacts,
    RunResult,
    SyncRequest,
)
from .verify import VerificationResult, append_verification, skipped_verification, verify_tree
from .versions import Version, VersionAllocator, find_version, list_versions, validate_set_name, version_size

LOGGER = logging.getLogger("winbackup.backup.service")


@dataclass(slots=True)
class _RunContext:
    kind: str
    ledger: AuditLedger
    artifacts: RunArtifacts
    meta: Dict[str, Any] = field(default_factory=dict)
    report: str = ""


def _utc_stamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _require_directory(path: Path, label: str) -> Path:
    path = Path(path)
    if not path.is_dir():
        raise ValidationError(f"{label} {path} does not exist or is not a directory")
    return path


class BackupService:
    """Coordinate backup, sync, restore, verification, retention and log rotation runs."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        copier: Optional[DifferentialCopier] = None,
        registrar: Optional[SchtasksRegistrar] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        self._settings = dict(settings) if settings is not None else load_settings(self._working_dir)
        self._config = BackupConfig.from_settings(self._settings)
        self._copier = copier or DifferentialCopier()
        schedule = self._settings.get("schedule") if isinstance(self._settings.get("schedule"), dict) else {}
        self._schedule_settings: Dict[str, Any] = dict(schedule)
        self._registrar = registrar or SchtasksRegistrar(str(schedule.get("schtasks_path") or "schtasks"))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = BackupLogger(self._working_dir)

    # ------------------------------------------------------------------
    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def logger(self) -> BackupLogger:
        return self._logger

    # ------------------------------------------------------------------
    def _resolve_config(self, request: Any) -> BackupConfig:
        overrides = {
            name: getattr(request, name, None)
            for name in (
                "retention_days",
                "retention_versions",
                "verify_checksum",
                "checksum_algorithm",
                "threads",
                "retries",
                "wait_seconds",
                "include",
                "exclude",
            )
        }
        config = self._config.with_overrides(**overrides)
        check_engine_filters(config.engine, config.include, config.exclude)
        return config.with_overrides(checksum_algorithm=normalize_algorithm(config.checksum_algorithm))

    def _open_run(self, kind: str, label: str) -> _RunContext:
        now = self._clock()
        base = get_runs_dir(self._working_dir)
        name = f"{now.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}-{kind}-{safe_label(label)}"
        directory = base / name
        counter = 1
        while directory.exists():
            directory = base / f"{name}-{counter:02d}"
            counter += 1
        directory.mkdir(parents=True, exist_ok=False)
        artifacts = RunArtifacts(directory=directory)
        context = _RunContext(kind=kind, ledger=AuditLedger(), artifacts=artifacts)
        context.meta.update({"kind": kind, "started_utc": _utc_stamp(now)})
        self._logger.event(event=f"{kind}_started", phase=kind, ok=True, run_dir=str(directory))
        return context

    def _finish_run(self, context: _RunContext, *, error: Optional[str] = None) -> AuditSummary:
        """Flush the audit trail and write the report; export problems are logged only."""

        context.meta["finished_utc"] = _utc_stamp(self._clock())
        artifacts = context.artifacts
        summary = summarize(context.ledger.records())
        try:
            exported = export_ledger(context.ledger, artifacts.directory, run=context.meta)
            summary = exported.summary
            artifacts.audit_csv, artifacts.audit_json = exported.files[0], exported.files[1]
        except OSError as exc:
            LOGGER.error("Cannot export audit trail to %s: %s", artifacts.directory, exc)
            self._logger.error("audit_export_failed", run_dir=str(artifacts.directory), error=str(exc))
        artifacts.report = artifacts.directory / "summary.txt"
        text = render_report(
            title=f"WinBackup {context.kind} run",
            run=context.meta,
            summary=summary,
            artifacts=artifacts.existing(),
            error=error,
        )
        try:
            write_report(artifacts.report, text)
        except OSError as exc:
            LOGGER.error("Cannot write run report %s: %s", artifacts.report, exc)
            self._logger.error("report_write_failed", path=str(artifacts.report), error=str(exc))
            artifacts.report = None
        context.report = text
        self._logger.event(
            event=f"{context.kind}_finished",
            phase=context.kind,
            ok=error is None and not summary.has_failures,
            run_dir=str(artifacts.directory),
            records=summary.total_records,
        )
        return summary

    def _abort(self, context: _RunContext, exc: Exception) -> None:
        detail = f"{type(exc).__name__}: {exc}"
        copy_log = context.artifacts.copy_log
        if copy_log is not None and not copy_log.exists():
            context.artifacts.copy_log = None
        context.ledger.error(detail)
        context.meta["status"] = "failed"
        self._finish_run(context, error=detail)

    def _result(
        self,
        context: _RunContext,
        summary: AuditSummary,
        *,
        copy: Optional[CopyResult] = None,
        **extra: Any,
    ) -> RunResult:
        failed = summary.failure_count(ignore=(AuditAction.SCHEDULE_REGISTER,)) > 0
        failed = failed or (copy is not None and copy.status != "success")
        status = "partial" if failed else "success"
        return RunResult(
            kind=context.kind,
            status=status,
            artifacts=context.artifacts,
            summary=summary,
            copy=copy,
            report=context.report,
            **extra,
        )

    def _run_copy(self, context: _RunContext, source: Path, destination: Path, options: CopyOptions) -> CopyResult:
        context.artifacts.copy_log = context.artifacts.directory / "copy.log"
        result = self._copier.run(source, destination, options, log_path=context.artifacts.copy_log)
        record_decisions(context.ledger, result)
        context.meta["copy_engine"] = result.engine
        context.meta["copy_exit_code"] = result.exit_code
        return result

    def _verify(
        self,
        context: _RunContext,
        source: Path,
        copy_dir: Path,
        config: BackupConfig,
        *,
        simulate: bool,
        sidecar: Optional[Path] = None,
    ) -> VerificationResult:
        if simulate:
            return skipped_verification(config.checksum_algorithm, context.ledger, target=copy_dir, reason="simulated run")
        result = verify_tree(
            source,
            copy_dir,
            algorithm=config.checksum_algorithm,
            ledger=context.ledger,
            include=config.include,
            exclude=config.exclude,
        )
        if sidecar is not None:
            try:
                append_verification(sidecar, result.records)
            except OSError as exc:
                LOGGER.error("Cannot write verification sidecar %s: %s", sidecar, exc)
                context.ledger.error(f"Cannot write verification sidecar: {exc}", target=sidecar)
        return result

    def _write_metadata(self, context: _RunContext, version: Version, manifest, catalog, *, dry_run: bool) -> None:
        if dry_run:
            manifest_path = context.artifacts.directory / "manifest.json"
            catalog_path = context.artifacts.directory / "catalog.csv"
        else:
            manifest_path = version.manifest_path
            catalog_path = version.catalog_path
        try:
            context.artifacts.catalog = write_catalog(catalog_path, catalog)
            context.artifacts.manifest = write_manifest(manifest_path, manifest)
        except OSError as exc:
            LOGGER.error("Cannot write version metadata for %s: %s", version.identifier, exc)
            context.ledger.error(f"Cannot write version metadata: {exc}", target=version.path)

    def _apply_retention(
        self,
        context: _RunContext,
        root: Path,
        set_name: str,
        config: BackupConfig,
        *,
        dry_run: bool,
        pending: Optional[Version] = None,
    ):
        policy = RetentionPolicy(max_age_days=config.retention_days, max_versions=config.retention_versions)
        context.meta["retention_days"] = policy.max_age_days
        context.meta["retention_versions"] = policy.max_versions
        return apply_retention(
            root,
            set_name,
            policy,
            ledger=context.ledger,
            dry_run=dry_run,
            now=self._clock(),
            logger=self._logger,
            pending=pending,
        )

    def _register_schedule(self, context: _RunContext, request: BackupRequest, trigger: ScheduleTrigger) -> None:
        prefix = str(self._schedule_settings.get("task_prefix") or "WinBackup")
        task_name = request.task_name or f"{prefix}-{request.set_name}"
        invocation = build_invocation(
            request,
            python_executable=self._schedule_settings.get("python_executable"),
            working_dir=self._working_dir,
        )
        detail = f"{trigger.describe()} {invocation}"
        if request.dry_run:
            context.ledger.record(AuditAction.SCHEDULE_REGISTER, AuditStatus.DRYRUN, target=task_name, detail=detail)
            return
        try:
            self._registrar.register(task_name, invocation, trigger)
        except ScheduleRegistrationError as exc:
            LOGGER.warning("Schedule registration for %s failed: %s", task_name, exc)
            context.ledger.record(AuditAction.SCHEDULE_REGISTER, AuditStatus.ERROR, target=task_name, detail=str(exc))
            self._logger.warning("schedule_register_failed", task=task_name, error=str(exc))
            return
        context.ledger.record(AuditAction.SCHEDULE_REGISTER, AuditStatus.OK, target=task_name, detail=detail)
        self._logger.info("schedule_registered", task=task_name, trigger=trigger.describe())

    # ------------------------------------------------------------------
    def run_backup(self, request: BackupRequest) -> RunResult:
        """Create a new version of ``request.set_name`` from ``request.source``.

        Pipeline: allocate, copy, catalog and manifest, verify, retention,
        optional schedule registration, audit flush. Invalid input raises
        :class:`ValidationError` before anything is written; a copy engine
        failure is recorded, flushed and re-raised.
        """

        set_name = validate_set_name(request.set_name)
        source = _require_directory(request.source, "Source")
        root = Path(request.root)
        config = self._resolve_config(request)
        trigger = parse_trigger(request.schedule) if request.schedule else None
        options = CopyOptions.from_config(config, simulate=request.dry_run)
        version = VersionAllocator(root, clock=self._clock).allocate(set_name, create=not request.dry_run)

        context = self._open_run("backup", set_name)
        context.meta.update(
            {
                "set": set_name,
                "source": str(source),
                "root": str(root),
                "version": version.identifier,
                "version_path": str(version.path),
                "dry_run": request.dry_run,
                "verify_checksum": config.verify_checksum,
                "checksum_algorithm": config.checksum_algorithm,
            }
        )
        context.ledger.record(
            AuditAction.VERSION_CREATED,
            AuditStatus.DRYRUN if request.dry_run else AuditStatus.OK,
            source=source,
            target=version.path,
            detail=version.identifier,
        )
        try:
            copy = self._run_copy(context, source, version.path, options)
        except CopyEngineError as exc:
            self._logger.error("backup_copy_failed", set=set_name, version=version.identifier, error=str(exc))
            self._abort(context, exc)
            raise

        catalog = planned_catalog(copy) if request.dry_run else build_catalog(version.path)
        manifest = build_manifest(
            set_name=set_name,
            source=source,
            version_path=version.path,
            identifier=version.identifier,
            options=options,
            copy_result=copy,
            verify_requested=config.verify_checksum,
            checksum_algorithm=config.checksum_algorithm,
        )
        self._write_metadata(context, version, manifest, catalog, dry_run=request.dry_run)

        verification = None
        if config.verify_checksum:
            verification = self._verify(
                context,
                source,
                version.path,
                config,
                simulate=request.dry_run,
                sidecar=None if request.dry_run else version.verify_path,
            )

        retention = self._apply_retention(
            context, root, set_name, config, dry_run=request.dry_run, pending=version
        )
        if trigger is not None:
            self._register_schedule(context, request, trigger)

        summary = self._finish_run(context)
        return self._result(
            context,
            summary,
            copy=copy,
            version=version,
            manifest=manifest,
            catalog=catalog,
            verification=verification,
            retention=retention,
        )

    def run_sync(self, request: SyncRequest) -> RunResult:
        """Mirror ``request.source`` into ``request.destination`` without versions or retention."""

        source = _require_directory(request.source, "Source")
        destination = Path(request.destination)
        config = self._resolve_config(request)
        options = CopyOptions.from_config(config, simulate=request.dry_run, mirror=request.mirror)

        context = self._open_run("sync", destination.name or "root")
        context.meta.update(
            {
                "source": str(source),
                "destination": str(destination),
                "mirror": request.mirror,
                "dry_run": request.dry_run,
            }
        )
        try:
            copy = self._run_copy(context, source, destination, options)
        except CopyEngineError as exc:
            self._logger.error("sync_copy_failed", destination=str(destination), error=str(exc))
            self._abort(context, exc)
            raise
        verification = None
        if config.verify_checksum:
            verification = self._verify(context, source, destination, config, simulate=request.dry_run)
        summary = self._finish_run(context)
        return self._result(context, summary, copy=copy, verification=verification)

    def run_restore(self, request: RestoreRequest) -> RunResult:
        set_name = validate_set_name(request.set_name)
        root = Path(request.root)
        subpaths = normalize_subpaths(request.subpaths)
        version = find_version(root, set_name, request.identifier)
        config = self._resolve_config(request)
        options = CopyOptions.from_config(config, simulate=request.dry_run)

        context = self._open_run("restore", set_name)
        context.meta.update(
            {
                "set": set_name,
                "root": str(root),
                "version": version.identifier,
                "target": str(request.target),
                "subpaths": ", ".join(subpaths) or "(all)",
                "dry_run": request.dry_run,
            }
        )
        context.artifacts.copy_log = context.artifacts.directory / "copy.log"
        try:
            outcome = restore_version(
                root,
                set_name,
                Path(request.target),
                copier=self._copier,
                options=options,
                ledger=context.ledger,
                identifier=version.identifier,
                subpaths=subpaths,
                verify=config.verify_checksum,
                algorithm=config.checksum_algorithm,
                log_path=context.artifacts.copy_log,
                logger=self._logger,
            )
        except (CopyEngineError, BackupRestoreError) as exc:
            self._logger.error("restore_copy_failed", set=set_name, version=version.identifier, error=str(exc))
            self._abort(context, exc)
            raise
        context.meta["copy_exit_code"] = outcome.exit_code
        summary = self._finish_run(context)
        copy = outcome.copies[0] if len(outcome.copies) == 1 else None
        result = self._result(context, summary, copy=copy, version=version, verification=outcome.verification)
        if any(item.status != "success" for item in outcome.copies):
            result.status = "partial"
        return result

    def run_retention(
        self,
        root: Path,
        set_name: str,
        *,
        retention_days: Optional[int] = None,
        retention_versions: Optional[int] = None,
        dry_run: bool = False,
    ) -> RunResult:
        set_name = validate_set_name(set_name)
        config = self._config.with_overrides(retention_days=retention_days, retention_versions=retention_versions)
        context = self._open_run("retention", set_name)
        context.meta.update({"set": set_name, "root": str(root), "dry_run": dry_run})
        retention = self._apply_retention(context, Path(root), set_name, config, dry_run=dry_run)
        summary = self._finish_run(context)
        return self._result(context, summary, retention=retention)

    def verify_version(
        self,
        root: Path,
        set_name: str,
        identifier: Optional[str] = None,
        *,
        source: Optional[Path] = None,
        checksum_algorithm: Optional[str] = None,
    ) -> RunResult:
        """Re-hash an existing version against its source, using filters recorded in its manifest."""

        set_name = validate_set_name(set_name)
        version = find_version(Path(root), set_name, identifier)
        manifest = read_manifest(version.manifest_path) if version.manifest_path.exists() else None
        source_dir = Path(source) if source is not None else (Path(manifest.source) if manifest else None)
        if source_dir is None:
            raise ValidationError(f"Version {version.identifier} has no manifest; pass the source explicitly")
        _require_directory(source_dir, "Source")
        algorithm = checksum_algorithm or (manifest.checksum_algorithm if manifest else None)
        config = self._config.with_overrides(
            checksum_algorithm=normalize_algorithm(algorithm or self._config.checksum_algorithm),
            include=manifest.include if manifest else None,
            exclude=manifest.exclude if manifest else None,
        )
        context = self._open_run("verify", set_name)
        context.meta.update(
            {
                "set": set_name,
                "version": version.identifier,
                "source": str(source_dir),
                "checksum_algorithm": config.checksum_algorithm,
            }
        )
        verification = self._verify(
            context,
            source_dir,
            version.path,
            config,
            simulate=False,
            sidecar=version.verify_path,
        )
        summary = self._finish_run(context)
        return self._result(context, summary, version=version, manifest=manifest, verification=verification)

    def list_versions(self, root: Path, set_name: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for version in list_versions(Path(root), set_name):
            items.append(
                {
                    "set": version.set_name,
                    "identifier": version.identifier,
                    "path": str(version.path),
                    "timestamp_utc": _utc_stamp(version.timestamp),
                    "size_bytes": version_size(version),
                    "has_manifest": version.manifest_path.exists(),
                    "verified": version.verify_path.exists(),
                }
            )
        return items

    def rotate_logs(self, request: LogRotationRequest) -> RunResult:
        """Archive aged log files into a new version, then remove the verified originals."""

        set_name = validate_set_name(request.set_name)
        log_dir = _require_directory(request.log_dir, "Log directory")
        root = Path(request.root)
        rotation = self._settings.get("rotation") if isinstance(self._settings.get("rotation"), dict) else {}
        patterns = tuple(request.patterns or rotation.get("patterns") or ("*.log",))
        min_age_days = float(
            request.min_age_days if request.min_age_days is not None else rotation.get("min_age_days", 1)
        )
        remove_originals = (
            request.remove_originals
            if request.remove_originals is not None
            else bool(rotation.get("remove_originals", True))
        )
        config = self._config.with_overrides(
            retention_days=request.retention_days,
            retention_versions=request.retention_versions,
            checksum_algorithm=normalize_algorithm(request.checksum_algorithm or self._config.checksum_algorithm),
            verify_checksum=True,
            exclude=(),
        )
        candidates = self._rotation_candidates(log_dir, patterns, min_age_days)

        context = self._open_run("rotate", set_name)
        context.meta.update(
            {
                "set": set_name,
                "source": str(log_dir),
                "root": str(root),
                "patterns": ", ".join(patterns),
                "min_age_days": min_age_days,
                "candidates": len(candidates),
                "dry_run": request.dry_run,
            }
        )
        if not candidates:
            LOGGER.info("No log files in %s older than %s day(s)", log_dir, min_age_days)
            summary = self._finish_run(context)
            return self._result(context, summary)

        version = VersionAllocator(root, clock=self._clock).allocate(set_name, create=not request.dry_run)
        context.meta["version"] = version.identifier
        context.ledger.record(
            AuditAction.VERSION_CREATED,
            AuditStatus.DRYRUN if request.dry_run else AuditStatus.OK,
            source=log_dir,
            target=version.path,
            detail=version.identifier,
        )
        names = tuple(glob.escape(path.name) for path in candidates)
        config = config.with_overrides(include=names)
        options = CopyOptions.from_config(config, simulate=request.dry_run).narrowed(recursive=False)
        try:
            copy = self._run_copy(context, log_dir, version.path, options)
        except CopyEngineError as exc:
            self._logger.error("rotate_copy_failed", set=set_name, error=str(exc))
            self._abort(context, exc)
            raise

        catalog = planned_catalog(copy) if request.dry_run else build_catalog(version.path)
        manifest = build_manifest(
            set_name=set_name,
            source=log_dir,
            version_path=version.path,
            identifier=version.identifier,
            options=options,
            copy_result=copy,
            verify_requested=True,
            checksum_algorithm=config.checksum_algorithm,
        )
        self._write_metadata(context, version, manifest, catalog, dry_run=request.dry_run)

        verification = None
        if request.dry_run:
            verification = skipped_verification(
                config.checksum_algorithm, context.ledger, target=version.path, reason="simulated run"
            )
        else:
            verification = verify_tree(
                log_dir,
                version.path,
                algorithm=config.checksum_algorithm,
                ledger=context.ledger,
                include=names,
                recursive=False,
            )
            append_verification(version.verify_path, verification.records)

        if remove_originals:
            self._remove_rotated(context, candidates, verification, dry_run=request.dry_run)

        retention = self._apply_retention(
            context, root, set_name, config, dry_run=request.dry_run, pending=version
        )
        summary = self._finish_run(context)
        return self._result(
            context,
            summary,
            copy=copy,
            version=version,
            manifest=manifest,
            catalog=catalog,
            verification=verification,
            retention=retention,
        )

    def _rotation_candidates(self, log_dir: Path, patterns: Sequence[str], min_age_days: float) -> List[Path]:
        cutoff = (self._clock() - timedelta(days=max(0.0, min_age_days))).timestamp()
        candidates: List[Path] = []
        for entry in sorted(log_dir.iterdir(), key=lambda item: item.name):
            if not entry.is_file() or not passes_filters(entry.name, patterns, ()):
                continue
            try:
                modified = entry.stat().st_mtime
            except OSError as exc:
                LOGGER.warning("Cannot stat log file %s: %s", entry, exc)
                continue
            if modified <= cutoff:
                candidates.append(entry)
        return candidates

    def _remove_rotated(
        self,
        context: _RunContext,
        candidates: Sequence[Path],
        verification: VerificationResult,
        *,
        dry_run: bool,
    ) -> None:
        verified = {
            os.path.normcase(record.source) for record in verification.records if record.status == AuditStatus.OK
        }
        for path in candidates:
            size = path.stat().st_size if path.exists() else 0
            if dry_run:
                context.ledger.record(AuditAction.DELETE, AuditStatus.DRYRUN, target=path, size_bytes=size)
                continue
            if os.path.normcase(str(path)) not in verified:
                LOGGER.warning("Keeping %s: archived copy was not verified", path)
                continue
            try:
                path.unlink()
            except OSError as exc:
                context.ledger.record(AuditAction.DELETE, AuditStatus.ERROR, target=path, size_bytes=size, detail=str(exc))
                continue
            context.ledger.record(AuditAction.DELETE, AuditStatus.OK, target=path, size_bytes=size, detail="rotated")


__all__ = ["BackupService"]
