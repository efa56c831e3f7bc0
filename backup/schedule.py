"""Register recurring backups with the Windows Task Scheduler."""
from __future__ import annotations

import logging
import re
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import ScheduleRegistrationError, ValidationError
from .types import BackupRequest

LOGGER = logging.getLogger("winbackup.backup.schedule")

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
_CLOCK = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True, slots=True)
class ScheduleTrigger:
    kind: str
    time: Optional[str] = None
    days: tuple = ()
    date: Optional[str] = None

    def schtasks_args(self) -> List[str]:
        if self.kind == "daily":
            return ["/SC", "DAILY", "/ST", str(self.time)]
        if self.kind == "weekly":
            return ["/SC", "WEEKLY", "/D", ",".join(self.days), "/ST", str(self.time)]
        if self.kind == "once":
            moment = datetime.strptime(str(self.date), "%Y-%m-%d")
            return ["/SC", "ONCE", "/SD", moment.strftime("%m/%d/%Y"), "/ST", str(self.time)]
        if self.kind == "onlogon":
            return ["/SC", "ONLOGON"]
        return ["/SC", "ONSTART"]

    def describe(self) -> str:
        if self.kind == "daily":
            return f"daily@{self.time}"
        if self.kind == "weekly":
            return f"weekly:{','.join(self.days)}@{self.time}"
        if self.kind == "once":
            return f"once:{self.date}@{self.time}"
        return self.kind


def _parse_clock(value: str, expression: str) -> str:
    if not _CLOCK.match(value):
        raise ValidationError(f"Invalid time {value!r} in schedule {expression!r}; expected HH:MM")
    return value


def parse_trigger(expression: str) -> ScheduleTrigger:
    """Parse ``daily@HH:MM``, ``weekly:MON,WED@HH:MM``, ``once:YYYY-MM-DD@HH:MM``,
    ``onlogon`` or ``onstart``."""

    text = str(expression or "").strip()
    lowered = text.lower()
    if lowered in {"onlogon", "onstart"}:
        return ScheduleTrigger(kind=lowered)
    head, sep, clock = text.partition("@")
    if not sep:
        raise ValidationError(f"Unsupported schedule {expression!r}")
    kind, _, argument = head.partition(":")
    kind = kind.strip().lower()
    if kind == "daily" and not argument:
        return ScheduleTrigger(kind="daily", time=_parse_clock(clock, text))
    if kind == "weekly":
        days = tuple(day.strip().upper() for day in argument.split(",") if day.strip())
        if not days or any(day not in WEEKDAYS for day in days):
            raise ValidationError(f"Invalid weekdays in schedule {expression!r}; use {','.join(WEEKDAYS)}")
        return ScheduleTrigger(kind="weekly", time=_parse_clock(clock, text), days=days)
    if kind == "once":
        try:
            datetime.strptime(argument, "%Y-%m-%d")
        except ValueError as exc:
            raise ValidationError(f"Invalid date in schedule {expression!r}; expected YYYY-MM-DD") from exc
        return ScheduleTrigger(kind="once", time=_parse_clock(clock, text), date=argument)
    raise ValidationError(f"Unsupported schedule {expression!r}")


def _append_list(args: List[str], flag: str, values: Optional[Sequence[str]]) -> None:
    for value in values or ():
        args.extend([flag, str(value)])


def build_invocation(
    request: BackupRequest,
    *,
    python_executable: Optional[str] = None,
    working_dir: Optional[Path] = None,
) -> str:
    """Serialise the CLI command line that replays *request* without scheduling it again."""

    args: List[str] = [python_executable or sys.executable, "-m", "backup", "backup"]
    if working_dir is not None:
        args.extend(["--working-dir", str(working_dir)])
    args.extend(["--source", str(request.source), "--root", str(request.root), "--set", request.set_name])
    optional = (
        ("--retention-days", request.retention_days),
        ("--retention-versions", request.retention_versions),
        ("--checksum-algorithm", request.checksum_algorithm),
        ("--threads", request.threads),
        ("--retries", request.retries),
        ("--wait-seconds", request.wait_seconds),
    )
    for flag, value in optional:
        if value is not None:
            args.extend([flag, str(value)])
    if request.verify_checksum is True:
        args.append("--verify-checksum")
    elif request.verify_checksum is False:
        args.append("--no-verify-checksum")
    _append_list(args, "--include", request.include)
    _append_list(args, "--exclude", request.exclude)
    return subprocess.list2cmdline(args)


class SchtasksRegistrar:
    """Create or replace scheduled tasks through ``schtasks.exe``."""

    def __init__(
        self,
        schtasks_path: str = "schtasks",
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._schtasks = schtasks_path
        self._runner = runner

    def command(self, task_name: str, invocation: str, trigger: ScheduleTrigger) -> List[str]:
        return [self._schtasks, "/Create", "/TN", task_name, "/TR", invocation, *trigger.schtasks_args(), "/F"]

    def register(self, task_name: str, invocation: str, trigger: ScheduleTrigger) -> str:
        command = self.command(task_name, invocation, trigger)
        LOGGER.info("Registering scheduled task %s (%s)", task_name, trigger.describe())
        try:
            completed = self._runner(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ScheduleRegistrationError(f"Cannot launch {self._schtasks}: {exc}") from exc
        output = ((completed.stdout or "") + (completed.stderr or "")).strip()
        if completed.returncode != 0:
            raise ScheduleRegistrationError(
                f"{self._schtasks} exited with code {completed.returncode}: {output or 'no output'}"
            )
        return output


__all__ = [
    "ScheduleTrigger",
    "SchtasksRegistrar",
    "WEEKDAYS",
    "build_invocation",
    "parse_trigger",
]
