"""Command line entry point: ``python -m backup <command>``."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from audit.summary import format_bytes
from core.logging_utils import configure_console_logging, configure_json_logging

from .api import BackupService
from .errors import BackupError, CopyEngineError, ValidationError
from .types import BackupRequest, LogRotationRequest, RestoreRequest, RunResult, SyncRequest

LOGGER = logging.getLogger("winbackup.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_COPY_ENGINE = 3


def _add_copy_options(parser: argparse.ArgumentParser, *, include: bool = True) -> None:
    parser.add_argument("--threads", type=int, default=None, help="Parallel copy workers")
    parser.add_argument("--retries", type=int, default=None, help="Retries per file on transient errors")
    parser.add_argument("--wait-seconds", type=float, default=None, help="Delay between retries")
    parser.add_argument(
        "--verify-checksum",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Hash copied files against their source",
    )
    parser.add_argument("--checksum-algorithm", default=None, help="SHA256 (default), SHA1 or MD5")
    if include:
        parser.add_argument("--include", action="append", default=None, help="Include pattern (repeatable)")
    parser.add_argument("--exclude", action="append", default=None, help="Exclude pattern (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="Simulate without modifying anything")


def _add_retention_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--retention-days", type=int, default=None, help="Delete versions older than N days")
    parser.add_argument("--retention-versions", type=int, default=None, help="Keep at most N versions")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="winbackup", description="Versioned backups with verification and retention")
    parser.add_argument("--working-dir", type=Path, default=None, help="Override working directory")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose console logging")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Create a new version of a backup set")
    backup.add_argument("--source", type=Path, required=True)
    backup.add_argument("--root", type=Path, required=True, help="Backup root directory")
    backup.add_argument("--set", dest="set_name", required=True, help="Backup set name")
    _add_retention_options(backup)
    _add_copy_options(backup)
    backup.add_argument("--register-schedule", dest="schedule", default=None, help="e.g. daily@02:00")
    backup.add_argument("--task-name", default=None, help="Scheduled task name")

    sync = commands.add_parser("sync", help="Mirror a directory without versioning")
    sync.add_argument("--source", type=Path, required=True)
    sync.add_argument("--destination", type=Path, required=True)
    sync.add_argument("--no-mirror", dest="mirror", action="store_false", help="Keep extra destination files")
    _add_copy_options(sync)

    restore = commands.add_parser("restore", help="Restore a version into a target directory")
    restore.add_argument("--root", type=Path, required=True)
    restore.add_argument("--set", dest="set_name", required=True)
    restore.add_argument("--target", type=Path, required=True)
    restore.add_argument("--version", dest="identifier", default=None, help="yyyy/mm/dd/HHMMSS (default latest)")
    restore.add_argument("--path", dest="subpaths", action="append", default=None, help="Subpath to restore")
    _add_copy_options(restore, include=False)

    retention = commands.add_parser("retention", help="Apply retention to a backup set")
    retention.add_argument("--root", type=Path, required=True)
    retention.add_argument("--set", dest="set_name", required=True)
    _add_retention_options(retention)
    retention.add_argument("--dry-run", action="store_true")

    verify = commands.add_parser("verify", help="Re-verify an existing version against its source")
    verify.add_argument("--root", type=Path, required=True)
    verify.add_argument("--set", dest="set_name", required=True)
    verify.add_argument("--version", dest="identifier", default=None)
    verify.add_argument("--source", type=Path, default=None, help="Override the source recorded in the manifest")
    verify.add_argument("--checksum-algorithm", default=None)

    listing = commands.add_parser("list", help="List versions of a backup set")
    listing.add_argument("--root", type=Path, required=True)
    listing.add_argument("--set", dest="set_name", required=True)

    rotate = commands.add_parser("rotate-logs", help="Archive and remove aged log files")
    rotate.add_argument("--log-dir", type=Path, required=True)
    rotate.add_argument("--root", type=Path, required=True)
    rotate.add_argument("--set", dest="set_name", required=True)
    rotate.add_argument("--pattern", dest="patterns", action="append", default=None)
    rotate.add_argument("--min-age-days", type=float, default=None)
    rotate.add_argument("--keep-originals", dest="remove_originals", action="store_false", default=None)
    rotate.add_argument("--checksum-algorithm", default=None)
    _add_retention_options(rotate)
    rotate.add_argument("--dry-run", action="store_true")
    return parser


def _run_backup(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.run_backup(
        BackupRequest(
            source=args.source,
            root=args.root,
            set_name=args.set_name,
            retention_days=args.retention_days,
            retention_versions=args.retention_versions,
            verify_checksum=args.verify_checksum,
            checksum_algorithm=args.checksum_algorithm,
            threads=args.threads,
            retries=args.retries,
            wait_seconds=args.wait_seconds,
            include=args.include,
            exclude=args.exclude,
            dry_run=args.dry_run,
            schedule=args.schedule,
            task_name=args.task_name,
        )
    )


def _run_sync(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.run_sync(
        SyncRequest(
            source=args.source,
            destination=args.destination,
            mirror=args.mirror,
            verify_checksum=args.verify_checksum,
            checksum_algorithm=args.checksum_algorithm,
            threads=args.threads,
            retries=args.retries,
            wait_seconds=args.wait_seconds,
            include=args.include,
            exclude=args.exclude,
            dry_run=args.dry_run,
        )
    )


def _run_restore(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.run_restore(
        RestoreRequest(
            root=args.root,
            set_name=args.set_name,
            target=args.target,
            identifier=args.identifier,
            subpaths=args.subpaths or (),
            verify_checksum=args.verify_checksum,
            checksum_algorithm=args.checksum_algorithm,
            threads=args.threads,
            retries=args.retries,
            wait_seconds=args.wait_seconds,
            exclude=args.exclude,
            dry_run=args.dry_run,
        )
    )


def _run_retention(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.run_retention(
        args.root,
        args.set_name,
        retention_days=args.retention_days,
        retention_versions=args.retention_versions,
        dry_run=args.dry_run,
    )


def _run_verify(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.verify_version(
        args.root,
        args.set_name,
        args.identifier,
        source=args.source,
        checksum_algorithm=args.checksum_algorithm,
    )


def _run_rotate(service: BackupService, args: argparse.Namespace) -> RunResult:
    return service.rotate_logs(
        LogRotationRequest(
            log_dir=args.log_dir,
            root=args.root,
            set_name=args.set_name,
            patterns=args.patterns,
            min_age_days=args.min_age_days,
            remove_originals=args.remove_originals,
            retention_days=args.retention_days,
            retention_versions=args.retention_versions,
            checksum_algorithm=args.checksum_algorithm,
            dry_run=args.dry_run,
        )
    )


_HANDLERS: Dict[str, Callable[[BackupService, argparse.Namespace], RunResult]] = {
    "backup": _run_backup,
    "sync": _run_sync,
    "restore": _run_restore,
    "retention": _run_retention,
    "verify": _run_verify,
    "rotate-logs": _run_rotate,
}


def format_versions(items: List[Dict[str, Any]]) -> str:
    if not items:
        return "No versions found"
    lines = [f"{'Version':<22} {'Size':>12}  Manifest  Verified"]
    for item in items:
        lines.append(
            f"{item['identifier']:<22} {format_bytes(item['size_bytes']):>12}  "
            f"{'yes' if item['has_manifest'] else 'no':<8}  {'yes' if item['verified'] else 'no'}"
        )
    return "\n".join(lines)


def cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_console_logging(args.verbose)
    try:
        service = BackupService(working_dir=args.working_dir)
        configure_json_logging(working_dir=service.working_dir)
        if args.command == "list":
            items = service.list_versions(args.root, args.set_name)
            print(json.dumps(items, indent=2) if args.json else format_versions(items))
            return EXIT_OK
        result = _HANDLERS[args.command](service, args)
    except ValidationError as exc:
        LOGGER.error("Invalid request: %s", exc)
        print(f"error: {exc}")
        return EXIT_VALIDATION
    except CopyEngineError as exc:
        LOGGER.error("Copy engine failed: %s", exc)
        print(f"error: {exc}")
        return EXIT_COPY_ENGINE
    except BackupError as exc:
        LOGGER.error("Backup command failed: %s", exc)
        print(f"error: {exc}")
        return EXIT_ERROR
    if args.json:
        print(json.dumps(result.as_dict(), indent=2))
    else:
        print(result.report, end="")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli())
