"""FastAPI application exposing the backup engine to local automation."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backup.api import BackupService
from backup.errors import BackupError, CopyEngineError, ValidationError
from backup.types import BackupRequest, RestoreRequest, RunResult

from . import __version__
from .auth import APIKeyAuth
from .models import (
    BackupRunRequest,
    HealthResponse,
    RestoreRunRequest,
    RetentionRunRequest,
    RunResponse,
    VerifyRunRequest,
    VersionItem,
    VersionsResponse,
)

LOGGER = logging.getLogger("winbackup.api")


@dataclass(slots=True)
class APIServerConfig:
    """Runtime configuration for the FastAPI application."""

    service: BackupService
    api_key: Optional[str]
    app_version: str = __version__
    lan_only: bool = True


_LOCAL_CLIENT_SENTINELS = {
    "127.0.0.1",
    "::1",
    "localhost",
    "testclient",
}


def _normalise_remote_host(host: Optional[str]) -> Optional[str]:
    if host is None:
        return None
    value = host.strip().lower()
    if not value:
        return None
    if value.startswith("::ffff:"):
        value = value.split("::ffff:")[-1]
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    if "%" in value:  # strip IPv6 scope id
        value = value.split("%", 1)[0]
    return value


def _is_loopback_host(host: Optional[str]) -> bool:
    value = _normalise_remote_host(host)
    if value is None:
        return True
    return value in _LOCAL_CLIENT_SENTINELS or value.startswith("127.")


def _run_response(result: RunResult) -> RunResponse:
    return RunResponse(**result.as_dict())


def create_app(config: APIServerConfig) -> FastAPI:
    """Create a FastAPI application bound to the given configuration."""

    app = FastAPI(
        title="WinBackup Control API",
        version=config.app_version,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )
    auth_dependency = APIKeyAuth(config.api_key)
    service = config.service
    lan_only = bool(config.lan_only)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[override]
        start = time.perf_counter()
        response: Optional[Response] = None
        client_host = request.client.host if request.client else None
        try:
            if lan_only and not _is_loopback_host(client_host):
                LOGGER.warning("Rejected non-local HTTP request from %s", client_host or "<unknown>")
                response = JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "remote access disabled"})
            else:
                response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response is not None else 500
            LOGGER.info(
                "%s %s -> %s (%.1f ms) ip=%s",
                request.method,
                request.url.path,
                status_code,
                duration_ms,
                client_host or "-",
            )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid parameters", "details": exc.errors()},
        )

    @app.exception_handler(ValidationError)
    async def backup_validation_handler(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(CopyEngineError)
    async def copy_engine_handler(_request: Request, exc: CopyEngineError):
        LOGGER.error("Copy engine failure: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": str(exc), "exit_code": exc.exit_code},
        )

    @app.exception_handler(BackupError)
    async def backup_error_handler(_request: Request, exc: BackupError):
        LOGGER.error("Backup operation failed: %s", exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})

    @app.get("/v1/health", response_model=HealthResponse)
    def health(_: str = Depends(auth_dependency)) -> HealthResponse:
        return HealthResponse(
            ok=True,
            version=config.app_version,
            time_utc=datetime.now(timezone.utc).isoformat(),
            working_dir=str(service.working_dir),
        )

    router = APIRouter(prefix="/v1", dependencies=[Depends(auth_dependency)])

    @router.get("/sets/{set_name}/versions", response_model=VersionsResponse)
    def list_versions(set_name: str, root: str = Query(..., min_length=1)) -> VersionsResponse:
        items = service.list_versions(Path(root), set_name)
        return VersionsResponse(set=set_name, root=root, versions=[VersionItem(**item) for item in items])

    @router.post("/backup", response_model=RunResponse)
    def run_backup(payload: BackupRunRequest) -> RunResponse:
        result = service.run_backup(
            BackupRequest(
                source=Path(payload.source),
                root=Path(payload.root),
                set_name=payload.set_name,
                retention_days=payload.retention_days,
                retention_versions=payload.retention_versions,
                verify_checksum=payload.verify_checksum,
                checksum_algorithm=payload.checksum_algorithm,
                threads=payload.threads,
                retries=payload.retries,
                wait_seconds=payload.wait_seconds,
                include=payload.include,
                exclude=payload.exclude,
                dry_run=payload.dry_run,
                schedule=payload.schedule,
                task_name=payload.task_name,
            )
        )
        return _run_response(result)

    @router.post("/restore", response_model=RunResponse)
    def run_restore(payload: RestoreRunRequest) -> RunResponse:
        result = service.run_restore(
            RestoreRequest(
                root=Path(payload.root),
                set_name=payload.set_name,
                target=Path(payload.target),
                identifier=payload.identifier,
                subpaths=tuple(payload.subpaths),
                verify_checksum=payload.verify_checksum,
                checksum_algorithm=payload.checksum_algorithm,
                threads=payload.threads,
                retries=payload.retries,
                wait_seconds=payload.wait_seconds,
                exclude=payload.exclude,
                dry_run=payload.dry_run,
            )
        )
        return _run_response(result)

    @router.post("/retention", response_model=RunResponse)
    def run_retention(payload: RetentionRunRequest) -> RunResponse:
        result = service.run_retention(
            Path(payload.root),
            payload.set_name,
            retention_days=payload.retention_days,
            retention_versions=payload.retention_versions,
            dry_run=payload.dry_run,
        )
        return _run_response(result)

    @router.post("/verify", response_model=RunResponse)
    def run_verify(payload: VerifyRunRequest) -> RunResponse:
        result = service.verify_version(
            Path(payload.root),
            payload.set_name,
            payload.identifier,
            source=Path(payload.source) if payload.source else None,
            checksum_algorithm=payload.checksum_algorithm,
        )
        return _run_response(result)

    app.include_router(router)
    return app


__all__ = ["APIServerConfig", "create_app"]
