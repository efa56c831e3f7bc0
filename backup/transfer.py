"""Differential copy engine.

The engine plans a transfer by comparing ``stat`` results of the source and
destination trees and then executes the plan either natively (a bounded
thread pool around :func:`shutil.copy2`) or by delegating to ``robocopy``.
Both transports report structured per-file decisions; aggregate counts are
derived from those decisions rather than from tool output.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from core.paths import to_long_path
from robust import is_transient, passes_filters

from .errors import CopyEngineError, ValidationError
from .types import BackupConfig

LOGGER = logging.getLogger("winbackup.backup.transfer")

EXIT_COPIED = 1
EXIT_EXTRA = 2
EXIT_MISMATCH = 4
EXIT_FAILED = 8
EXIT_FATAL = 16

ENGINES = ("native", "robocopy")


class CopyAction(str, Enum):
    COPY = "copy"
    UPDATE = "update"
    SKIP = "skip"
    MISMATCH = "mismatch"
    EXTRA = "extra"
    DELETE = "delete"


_TRANSFER_ACTIONS = (CopyAction.COPY, CopyAction.UPDATE)


@dataclass(slots=True)
class FileDecision:
    relative_path: str
    action: CopyAction
    destination: Path
    source: Optional[Path] = None
    size_bytes: int = 0
    is_dir: bool = False
    outcome: str = "pending"
    attempts: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome == "error"


@dataclass(frozen=True, slots=True)
class CopyOptions:
    include: Tuple[str, ...] = ("*",)
    exclude: Tuple[str, ...] = ()
    threads: int = 8
    retries: int = 3
    wait_seconds: float = 5.0
    simulate: bool = False
    mirror: bool = False
    recursive: bool = True
    timestamp_tolerance_s: float = 2.0
    engine: str = "native"
    robocopy_path: str = "robocopy"

    @classmethod
    def from_config(cls, config: BackupConfig, *, simulate: bool = False, mirror: bool = False) -> "CopyOptions":
        return cls(
            include=tuple(config.include),
            exclude=tuple(config.exclude),
            threads=config.threads,
            retries=config.retries,
            wait_seconds=config.wait_seconds,
            simulate=simulate,
            mirror=mirror,
            timestamp_tolerance_s=config.timestamp_tolerance_s,
            engine=config.engine,
            robocopy_path=config.robocopy_path,
        )

    def narrowed(self, **changes: object) -> "CopyOptions":
        return replace(self, **changes)


@dataclass(slots=True)
class CopyStats:
    copied: int = 0
    updated: int = 0
    skipped: int = 0
    mismatched: int = 0
    extra: int = 0
    deleted: int = 0
    failed: int = 0
    bytes_copied: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "copied": self.copied,
            "updated": self.updated,
            "skipped": self.skipped,
            "mismatched": self.mismatched,
            "extra": self.extra,
            "deleted": self.deleted,
            "failed": self.failed,
            "bytes_copied": self.bytes_copied,
        }


@dataclass(slots=True)
class CopyResult:
    source: Path
    destination: Path
    engine: str
    exit_code: int
    simulated: bool
    decisions: List[FileDecision] = field(default_factory=list)
    stats: CopyStats = field(default_factory=CopyStats)
    log_path: Optional[Path] = None

    @property
    def status(self) -> str:
        return "partial" if self.exit_code & EXIT_FAILED else "success"

    def failures(self) -> List[FileDecision]:
        return [decision for decision in self.decisions if decision.failed]


def _relative(base: str, path: str) -> str:
    rel = os.path.relpath(path, base)
    return "" if rel == "." else rel.replace(os.sep, "/")


def _size_of(path: Path) -> int:
    try:
        return os.stat(to_long_path(path)).st_size
    except OSError:
        return 0


def _mtime_differs(src: os.stat_result, dest: os.stat_result, tolerance: float) -> bool:
    return abs(src.st_mtime - dest.st_mtime) > tolerance


def _compute_stats(decisions: Sequence[FileDecision]) -> CopyStats:
    stats = CopyStats()
    for decision in decisions:
        if decision.failed:
            stats.failed += 1
            continue
        if decision.action == CopyAction.COPY:
            stats.copied += 1
            stats.bytes_copied += decision.size_bytes
        elif decision.action == CopyAction.UPDATE:
            stats.updated += 1
            stats.bytes_copied += decision.size_bytes
        elif decision.action == CopyAction.SKIP:
            stats.skipped += 1
        elif decision.action == CopyAction.MISMATCH:
            stats.mismatched += 1
        elif decision.action == CopyAction.EXTRA:
            stats.extra += 1
        elif decision.action == CopyAction.DELETE:
            stats.deleted += 1
    return stats


def _mark_dryrun(decisions: Sequence[FileDecision]) -> None:
    for decision in decisions:
        if decision.outcome == "pending" and decision.action != CopyAction.EXTRA:
            decision.outcome = "dryrun"


def _compute_exit_code(decisions: Sequence[FileDecision]) -> int:
    code = 0
    for decision in decisions:
        if decision.failed:
            code |= EXIT_FAILED
        elif decision.action in _TRANSFER_ACTIONS:
            code |= EXIT_COPIED
        elif decision.action in (CopyAction.EXTRA, CopyAction.DELETE):
            code |= EXIT_EXTRA
        elif decision.action == CopyAction.MISMATCH:
            code |= EXIT_MISMATCH
    return code


def check_engine_filters(engine: str, include: Sequence[str], exclude: Sequence[str] = ()) -> None:
    """Reject filter patterns the selected engine cannot express.

    robocopy matches file names only, so a pattern scoped to a subdirectory
    would make its transfers diverge from the audited plan.
    """

    if (engine or "native").lower() != "robocopy":
        return
    scoped = [pattern for pattern in (*include, *exclude) if "/" in pattern or "\\" in pattern]
    if scoped:
        raise ValidationError(f"robocopy cannot apply path-scoped filter patterns: {', '.join(scoped)}")


def build_robocopy_command(source: Path, destination: Path, options: CopyOptions) -> List[str]:
    """Return the ``robocopy`` argument vector equivalent to *options*."""

    command = [options.robocopy_path, str(source), str(destination)]
    command.extend([pattern for pattern in options.include if pattern] or ["*"])
    if options.recursive:
        command.append("/MIR" if options.mirror else "/E")
    command.extend(
        [
            "/COPY:DAT",
            "/DCOPY:T",
            "/FFT",
            f"/MT:{min(max(int(options.threads), 1), 128)}",
            f"/R:{int(options.retries)}",
            f"/W:{int(round(options.wait_seconds))}",
            "/NP",
            "/BYTES",
        ]
    )
    if options.exclude:
        command.append("/XF")
        command.extend(options.exclude)
    if options.simulate:
        command.append("/L")
    return command


class DifferentialCopier:
    """Copy new and changed files from a source tree into a destination tree."""

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._sleep = sleep
        self._runner = runner

    # ------------------------------------------------------------------
    def plan(self, source: Path, destination: Path, options: CopyOptions) -> List[FileDecision]:
        source = Path(source)
        destination = Path(destination)
        if not source.is_dir():
            raise CopyEngineError(f"Source directory {source} does not exist or is not a directory")
        decisions: List[FileDecision] = []
        source_files: Set[str] = set()
        source_dirs: Set[str] = {""}
        walk_errors: List[OSError] = []
        src_base = str(source)

        for dirpath, dirnames, filenames in os.walk(src_base, onerror=walk_errors.append):
            dirnames.sort()
            rel_dir = _relative(src_base, dirpath)
            if not options.recursive:
                dirnames[:] = []
            for name in dirnames:
                source_dirs.add(f"{rel_dir}/{name}" if rel_dir else name)
            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not passes_filters(rel, options.include, options.exclude):
                    continue
                source_files.add(rel)
                src_path = Path(dirpath) / name
                dest_path = destination / rel
                try:
                    src_stat = os.stat(to_long_path(src_path))
                except OSError as exc:
                    decisions.append(
                        FileDecision(rel, CopyAction.COPY, dest_path, src_path, outcome="error", error=str(exc))
                    )
                    continue
                decisions.append(self._decide(rel, src_path, src_stat, dest_path, options))

        for exc in walk_errors:
            if Path(getattr(exc, "filename", "") or "") == source:
                raise CopyEngineError(f"Cannot enumerate source {source}: {exc}") from exc
            LOGGER.warning("Cannot enumerate %s: %s", getattr(exc, "filename", "?"), exc)
            rel = _relative(src_base, str(exc.filename)) if getattr(exc, "filename", None) else "?"
            decisions.append(
                FileDecision(rel, CopyAction.COPY, destination / rel, is_dir=True, outcome="error", error=str(exc))
            )

        if destination.is_dir():
            blockers, extras = self._extras(destination, source_files, source_dirs, options)
            decisions = blockers + decisions + extras
        return decisions

    def _decide(
        self,
        rel: str,
        src_path: Path,
        src_stat: os.stat_result,
        dest_path: Path,
        options: CopyOptions,
    ) -> FileDecision:
        size = int(src_stat.st_size)
        try:
            dest_stat = os.stat(to_long_path(dest_path))
        except (FileNotFoundError, NotADirectoryError):
            return FileDecision(rel, CopyAction.COPY, dest_path, src_path, size_bytes=size)
        except OSError as exc:
            return FileDecision(rel, CopyAction.COPY, dest_path, src_path, size_bytes=size, outcome="error", error=str(exc))
        if dest_path.is_dir():
            return FileDecision(rel, CopyAction.MISMATCH, dest_path, src_path, size_bytes=size, outcome="skipped")
        if dest_stat.st_size != src_stat.st_size or _mtime_differs(src_stat, dest_stat, options.timestamp_tolerance_s):
            return FileDecision(rel, CopyAction.UPDATE, dest_path, src_path, size_bytes=size)
        return FileDecision(rel, CopyAction.SKIP, dest_path, src_path, size_bytes=size, outcome="skipped")

    def _extras(
        self,
        destination: Path,
        source_files: Set[str],
        source_dirs: Set[str],
        options: CopyOptions,
    ) -> Tuple[List[FileDecision], List[FileDecision]]:
        """Return mirror removals of files standing where source directories go, then the other extras."""

        action = CopyAction.DELETE if options.mirror else CopyAction.EXTRA
        blockers: List[FileDecision] = []
        extras: List[FileDecision] = []
        extra_dirs: List[FileDecision] = []
        dest_base = str(destination)
        for dirpath, dirnames, filenames in os.walk(dest_base):
            dirnames.sort()
            rel_dir = _relative(dest_base, dirpath)
            if not options.recursive:
                dirnames[:] = []
            for name in dirnames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if rel not in source_dirs and rel not in source_files:
                    extra_dirs.append(FileDecision(rel, action, Path(dirpath) / name, is_dir=True))
            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if rel in source_dirs and options.mirror:
                    path = Path(dirpath) / name
                    blockers.append(FileDecision(rel, CopyAction.DELETE, path, size_bytes=_size_of(path)))
                    continue
                if rel in source_files or rel in source_dirs:
                    continue
                if not passes_filters(rel, options.include, options.exclude):
                    continue
                path = Path(dirpath) / name
                extras.append(FileDecision(rel, action, path, size_bytes=_size_of(path)))
        # deepest directories first so they are removed before their parents
        extra_dirs.sort(key=lambda item: item.relative_path.count("/"), reverse=True)
        return blockers, extras + extra_dirs

    # ------------------------------------------------------------------
    def run(
        self,
        source: Path,
        destination: Path,
        options: CopyOptions,
        *,
        log_path: Optional[Path] = None,
    ) -> CopyResult:
        """Plan and execute a differential copy.

        Raises :class:`CopyEngineError` for tool-level failures only; per-file
        failures are reported through the returned decisions.
        """

        engine = (options.engine or "native").lower()
        if engine not in ENGINES:
            raise CopyEngineError(f"Unknown copy engine {options.engine!r}")
        check_engine_filters(engine, options.include, options.exclude)
        source = Path(source)
        destination = Path(destination)
        decisions = self.plan(source, destination, options)
        if not options.simulate:
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CopyEngineError(f"Cannot create destination {destination}: {exc}") from exc

        started = time.monotonic()
        tool_output = ""
        exit_code: Optional[int] = None
        if engine == "robocopy":
            exit_code, tool_output = self._run_robocopy(source, destination, decisions, options)
        elif options.simulate:
            _mark_dryrun(decisions)
        else:
            self._run_native(decisions, options)
        for decision in decisions:
            if decision.outcome == "pending":
                decision.outcome = "skipped"

        computed = _compute_exit_code(decisions)
        final_code = computed if exit_code is None else (exit_code | (computed & EXIT_FAILED))
        result = CopyResult(
            source=source,
            destination=destination,
            engine=engine,
            exit_code=final_code,
            simulated=options.simulate,
            decisions=decisions,
            stats=_compute_stats(decisions),
            log_path=log_path,
        )
        if log_path is not None:
            self._write_log(log_path, result, options, tool_output, time.monotonic() - started)
        LOGGER.info(
            "Copy %s -> %s finished: exit=%s stats=%s",
            source,
            destination,
            result.exit_code,
            result.stats.as_dict(),
        )
        return result

    # ------------------------------------------------------------------
    def _run_native(self, decisions: List[FileDecision], options: CopyOptions) -> None:
        # file removals run first: a mirrored file may occupy a source directory's path
        for decision in decisions:
            if decision.action == CopyAction.DELETE and not decision.is_dir and decision.outcome == "pending":
                self._delete(decision)
        transfers = [d for d in decisions if d.action in _TRANSFER_ACTIONS and d.outcome == "pending"]
        if transfers:
            with ThreadPoolExecutor(max_workers=max(1, options.threads)) as pool:
                futures = {pool.submit(self._transfer, decision, options): decision for decision in transfers}
                for future in as_completed(futures):
                    future.result()
        for decision in decisions:
            if decision.action == CopyAction.DELETE and decision.outcome == "pending":
                self._delete(decision)

    def _transfer(self, decision: FileDecision, options: CopyOptions) -> None:
        assert decision.source is not None
        while True:
            decision.attempts += 1
            try:
                decision.destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(to_long_path(decision.source), to_long_path(decision.destination))
                decision.outcome = "ok"
                decision.error = None
                return
            except OSError as exc:
                decision.error = str(exc)
                if decision.attempts > options.retries or not is_transient(exc):
                    decision.outcome = "error"
                    LOGGER.warning(
                        "Giving up on %s after %s attempt(s): %s",
                        decision.relative_path,
                        decision.attempts,
                        exc,
                    )
                    if decision.action == CopyAction.COPY:
                        try:
                            decision.destination.unlink(missing_ok=True)
                        except OSError as cleanup_exc:
                            LOGGER.debug("Cannot remove partial copy %s: %s", decision.destination, cleanup_exc)
                    return
                LOGGER.info("Retrying %s in %ss: %s", decision.relative_path, options.wait_seconds, exc)
                self._sleep(options.wait_seconds)

    def _delete(self, decision: FileDecision) -> None:
        decision.attempts += 1
        try:
            if decision.is_dir:
                if any(decision.destination.iterdir()):
                    decision.outcome = "skipped"
                    return
                decision.destination.rmdir()
            else:
                decision.destination.unlink()
            decision.outcome = "ok"
        except FileNotFoundError:
            decision.outcome = "ok"
        except OSError as exc:
            decision.outcome = "error"
            decision.error = str(exc)

    # ------------------------------------------------------------------
    def _run_robocopy(
        self,
        source: Path,
        destination: Path,
        decisions: List[FileDecision],
        options: CopyOptions,
    ) -> Tuple[int, str]:
        command = build_robocopy_command(source, destination, options)
        LOGGER.info("Launching %s", subprocess.list2cmdline(command))
        try:
            completed = self._runner(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise CopyEngineError(f"Cannot launch {options.robocopy_path}: {exc}") from exc
        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode >= EXIT_FATAL:
            raise CopyEngineError(
                f"{options.robocopy_path} aborted with exit code {completed.returncode}",
                exit_code=completed.returncode,
            )
        if options.simulate:
            _mark_dryrun(decisions)
            return completed.returncode, output
        for decision in decisions:
            if decision.outcome != "pending":
                continue
            if decision.action in _TRANSFER_ACTIONS:
                self._confirm_copy(decision, options)
            elif decision.action == CopyAction.DELETE:
                decision.attempts = 1
                if decision.destination.exists():
                    decision.outcome = "error"
                    decision.error = "still present after mirror"
                else:
                    decision.outcome = "ok"
        return completed.returncode, output

    def _confirm_copy(self, decision: FileDecision, options: CopyOptions) -> None:
        assert decision.source is not None
        decision.attempts = 1
        try:
            src_stat = os.stat(to_long_path(decision.source))
            dest_stat = os.stat(to_long_path(decision.destination))
        except OSError as exc:
            decision.outcome = "error"
            decision.error = str(exc)
            return
        if dest_stat.st_size != src_stat.st_size or _mtime_differs(src_stat, dest_stat, options.timestamp_tolerance_s):
            decision.outcome = "error"
            decision.error = "destination does not match source after copy"
        else:
            decision.outcome = "ok"

    # ------------------------------------------------------------------
    def _write_log(
        self,
        path: Path,
        result: CopyResult,
        options: CopyOptions,
        tool_output: str,
        elapsed: float,
    ) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(f"Source      : {result.source}\n")
                handle.write(f"Destination : {result.destination}\n")
                handle.write(
                    f"Options     : engine={result.engine} threads={options.threads} retries={options.retries} "
                    f"wait={options.wait_seconds}s mirror={options.mirror} simulate={options.simulate}\n"
                )
                handle.write(f"Include     : {' '.join(options.include)}\n")
                handle.write(f"Exclude     : {' '.join(options.exclude)}\n")
                handle.write("-" * 78 + "\n")
                for decision in result.decisions:
                    line = f"{decision.action.value:<9}{decision.outcome:<8}{decision.size_bytes:>14}  {decision.relative_path}"
                    if decision.is_dir:
                        line += "/"
                    if decision.error:
                        line += f"  [{decision.error}]"
                    handle.write(line + "\n")
                if tool_output:
                    handle.write("-" * 78 + "\n")
                    handle.write(tool_output.rstrip() + "\n")
                handle.write("-" * 78 + "\n")
                stats = " ".join(f"{key}={value}" for key, value in result.stats.as_dict().items())
                handle.write(f"Stats       : {stats}\n")
                handle.write(f"Exit code   : {result.exit_code} ({result.status}) in {elapsed:.2f}s\n\n")
        except OSError as exc:
            LOGGER.error("Cannot write copy log %s: %s", path, exc)


_OUTCOME_STATUS = {"ok": AuditStatus.OK, "error": AuditStatus.ERROR, "dryrun": AuditStatus.DRYRUN}


def _audit_entry(decision: FileDecision, action: AuditAction) -> Optional[Tuple[AuditAction, AuditStatus, str]]:
    if decision.action == CopyAction.DELETE:
        status = _OUTCOME_STATUS.get(decision.outcome)
        if status is None:
            return None
        return AuditAction.DELETE, status, decision.error or ("directory" if decision.is_dir else "")
    if decision.failed:
        return action, AuditStatus.ERROR, decision.error or ""
    if decision.action in _TRANSFER_ACTIONS:
        return action, _OUTCOME_STATUS.get(decision.outcome, AuditStatus.SKIP), decision.action.value
    if decision.action == CopyAction.MISMATCH:
        status = AuditStatus.MISMATCH if action == AuditAction.COPY else AuditStatus.SKIP
        return action, status, "destination is a directory"
    if decision.action == CopyAction.EXTRA:
        if decision.is_dir:
            return None
        return action, AuditStatus.SKIP, "extra in destination"
    return action, AuditStatus.SKIP, "unchanged"


def record_decisions(ledger: AuditLedger, result: CopyResult, *, action: AuditAction = AuditAction.COPY) -> int:
    """Translate copy decisions into audit records; returns the number written.

    Transfers map to *action*, mirror removals to ``Delete``. Extra entries and
    unchanged files are recorded as SKIP; directories pruned only when empty
    are not recorded.
    """

    written = 0
    for decision in result.decisions:
        entry = _audit_entry(decision, action)
        if entry is None:
            continue
        tag, status, detail = entry
        ledger.record(
            tag,
            status,
            source=decision.source or "",
            target=decision.destination,
            size_bytes=decision.size_bytes,
            detail=detail,
        )
        written += 1
    return written


__all__ = [
    "CopyAction",
    "CopyOptions",
    "CopyResult",
    "CopyStats",
    "DifferentialCopier",
    "EXIT_COPIED",
    "EXIT_EXTRA",
    "EXIT_FAILED",
    "EXIT_FATAL",
    "EXIT_MISMATCH",
    "FileDecision",
    "build_robocopy_command",
    "check_engine_filters",
    "record_decisions",
]
