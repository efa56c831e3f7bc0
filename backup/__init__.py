"""Versioned backup, verification and retention engine."""
from __future__ import annotations

from .api import BackupService
from .errors import BackupError, CopyEngineError, ValidationError
from .retention import RetentionPolicy
from .types import (
    BackupConfig,
    BackupRequest,
    LogRotationRequest,
    RestoreRequest,
    RetentionSummary,
    RunResult,
    SyncRequest,
)

__all__ = [
    "BackupConfig",
    "BackupError",
    "BackupRequest",
    "BackupService",
    "CopyEngineError",
    "LogRotationRequest",
    "RestoreRequest",
    "RetentionPolicy",
    "RetentionSummary",
    "RunResult",
    "SyncRequest",
    "ValidationError",
]
