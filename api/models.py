"""Pydantic schemas for the WinBackup control API."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health response summarising server readiness."""

    ok: bool = Field(True, description="Indicates the API server is reachable.")
    version: str = Field(..., description="Application version string.")
    time_utc: str = Field(..., description="Current UTC timestamp in ISO8601 format.")
    working_dir: str = Field(..., description="Working directory holding logs, settings and run artifacts.")


class VersionItem(BaseModel):
    set: str
    identifier: str = Field(..., description="Version identifier in yyyy/mm/dd/HHMMSS[-NN] form (UTC).")
    path: str
    timestamp_utc: str
    size_bytes: int = Field(..., ge=0)
    has_manifest: bool
    verified: bool = Field(False, description="True when a verification sidecar exists for the version.")


class VersionsResponse(BaseModel):
    set: str
    root: str
    versions: List[VersionItem] = Field(default_factory=list)


class CopyTuning(BaseModel):
    threads: Optional[int] = Field(None, ge=1, le=128)
    retries: Optional[int] = Field(None, ge=0)
    wait_seconds: Optional[float] = Field(None, ge=0)
    verify_checksum: Optional[bool] = None
    checksum_algorithm: Optional[str] = Field(None, description="SHA256, SHA1 or MD5.")
    exclude: Optional[List[str]] = None
    dry_run: bool = False


class BackupRunRequest(CopyTuning):
    source: str = Field(..., min_length=1)
    root: str = Field(..., min_length=1)
    set_name: str = Field(..., min_length=1)
    retention_days: Optional[int] = None
    retention_versions: Optional[int] = None
    include: Optional[List[str]] = None
    schedule: Optional[str] = Field(None, description="Trigger such as daily@02:00 or weekly:MON,THU@21:30.")
    task_name: Optional[str] = None


class RestoreRunRequest(CopyTuning):
    root: str = Field(..., min_length=1)
    set_name: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    identifier: Optional[str] = Field(None, description="Defaults to the most recent version.")
    subpaths: List[str] = Field(default_factory=list)


class RetentionRunRequest(BaseModel):
    root: str = Field(..., min_length=1)
    set_name: str = Field(..., min_length=1)
    retention_days: Optional[int] = None
    retention_versions: Optional[int] = None
    dry_run: bool = False


class VerifyRunRequest(BaseModel):
    root: str = Field(..., min_length=1)
    set_name: str = Field(..., min_length=1)
    identifier: Optional[str] = None
    source: Optional[str] = Field(None, description="Overrides the source recorded in the manifest.")
    checksum_algorithm: Optional[str] = None


class RunArtifactsInfo(BaseModel):
    directory: str
    files: List[str] = Field(default_factory=list)


class RunResponse(BaseModel):
    """Outcome of a pipeline run; ``status`` is ``success`` or ``partial``."""

    kind: str
    status: str
    error: Optional[str] = None
    artifacts: RunArtifactsInfo
    summary: Optional[Dict[str, Any]] = None
    version: Optional[Dict[str, Any]] = None
    copy_result: Optional[Dict[str, Any]] = Field(None, alias="copy")
    verification: Optional[Dict[str, Any]] = None
    retention: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}


__all__ = [
    "BackupRunRequest",
    "CopyTuning",
    "HealthResponse",
    "RestoreRunRequest",
    "RetentionRunRequest",
    "RunArtifactsInfo",
    "RunResponse",
    "VerifyRunRequest",
    "VersionItem",
    "VersionsResponse",
]
