"""Error hierarchy for backup operations."""
from __future__ import annotations


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


class ValidationError(BackupError, ValueError):
    """Raised for invalid input before a pipeline starts (set name, source, schedule trigger)."""


class CopyEngineError(BackupError):
    """Raised when the copy engine cannot run at all; aborts the current pipeline."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class DeletionError(BackupError):
    """Raised when a version directory cannot be removed."""


class ScheduleRegistrationError(BackupError):
    """Raised when the OS scheduler rejects a task registration."""


class BackupRestoreError(BackupError):
    """Raised when restoring a version fails structurally."""


__all__ = [
    "BackupError",
    "BackupRestoreError",
    "CopyEngineError",
    "DeletionError",
    "ScheduleRegistrationError",
    "ValidationError",
]
