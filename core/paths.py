from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

__all__ = [
    "get_default_settings_paths",
    "get_exports_dir",
    "get_logs_dir",
    "get_runs_dir",
    "is_unc",
    "resolve_working_dir",
    "safe_label",
    "to_long_path",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_IS_WINDOWS = os.name == "nt"
_WINDOWS_MAX_PATH = 260
_LONG_PATH_PREFIX = "\\\\?\\"
_UNC_PREFIX = "\\\\"
_LONG_UNC_PREFIX = "\\\\?\\UNC\\"
_APP_DIR_NAME = "WinBackup"


def is_unc(path: str | os.PathLike[str]) -> bool:
    """Return True if *path* points to a UNC network location."""

    text = str(path)
    if text.startswith(_LONG_UNC_PREFIX):
        return True
    if text.startswith(_LONG_PATH_PREFIX):
        return text[len(_LONG_PATH_PREFIX) :].startswith(_UNC_PREFIX)
    return text.startswith(_UNC_PREFIX)


def _needs_long_prefix(path: str) -> bool:
    return len(path) >= (_WINDOWS_MAX_PATH - 12)


def to_long_path(path: str | os.PathLike[str]) -> str:
    """Return a version of *path* that is safe for Windows long-path APIs.

    Deep version trees (``root/set/yyyy/mm/dd/HHMMSS/...``) routinely cross
    ``MAX_PATH`` on Windows; callers pass paths through here before handing
    them to ``open``/``shutil``. On other platforms the path is returned as is.
    """

    text = str(path)
    if not _IS_WINDOWS:
        return text
    normalized = text.replace("/", "\\")
    if normalized.startswith(_LONG_PATH_PREFIX):
        return normalized
    if normalized.startswith(_UNC_PREFIX):
        if not _needs_long_prefix(normalized):
            return normalized
        trimmed = normalized.lstrip("\\")
        return f"{_LONG_UNC_PREFIX}{trimmed}"
    if _needs_long_prefix(normalized):
        return f"{_LONG_PATH_PREFIX}{normalized}"
    return normalized


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover - cleanup only
            pass
        return False


def _prepare_working_dir(candidate: Path) -> Optional[Path]:
    if not _ensure_writable_dir(candidate):
        return None
    try:
        get_logs_dir(candidate).mkdir(parents=True, exist_ok=True)
        return candidate
    except OSError:
        return None


def _read_settings(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        return None
    return None


def _program_data_dir() -> Optional[Path]:
    program_data = os.environ.get("ProgramData")
    if not program_data:
        return None
    try:
        return _expand_path(program_data)
    except OSError:
        return None


def _local_appdata_dir() -> Optional[Path]:
    local_appdata = os.environ.get("LOCALAPPDATA")
    if not local_appdata:
        return None
    try:
        return _expand_path(local_appdata)
    except OSError:
        return None


def resolve_working_dir() -> Path:
    """Resolve the WinBackup working directory, creating it if required.

    The working directory holds ``settings.json``, logs and per-run artifacts.
    It is deliberately separate from any backup root so that dry runs leave
    the backup storage untouched.
    """

    env_home = os.environ.get("WINBACKUP_HOME")
    if env_home:
        try:
            env_path: Optional[Path] = _expand_path(env_home)
        except OSError:
            env_path = None
        if env_path:
            prepared = _prepare_working_dir(env_path)
            if prepared is not None:
                return prepared

    program_data = _program_data_dir()
    if program_data is not None:
        data = _read_settings(program_data / _APP_DIR_NAME / "settings.json")
        working_dir_value = data.get("working_dir") if data else None
        if isinstance(working_dir_value, str) and working_dir_value.strip():
            prepared = _prepare_working_dir(_expand_path(working_dir_value))
            if prepared is not None:
                return prepared
        prepared = _prepare_working_dir(program_data / _APP_DIR_NAME)
        if prepared is not None:
            return prepared

    local_base = _local_appdata_dir()
    if local_base is not None:
        prepared = _prepare_working_dir(local_base / _APP_DIR_NAME)
        if prepared is not None:
            return prepared

    fallback = Path.home() / _APP_DIR_NAME
    fallback.mkdir(parents=True, exist_ok=True)
    get_logs_dir(fallback).mkdir(parents=True, exist_ok=True)
    return fallback


_SAFE_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9_-]+")


def safe_label(label: str) -> str:
    """Return a filesystem-safe label used for run artifact folder names."""

    cleaned = _SAFE_LABEL_PATTERN.sub("_", label.strip())
    return cleaned or "run"


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def get_exports_dir(working_dir: Path) -> Path:
    return working_dir / "exports"


def get_runs_dir(working_dir: Path) -> Path:
    return get_exports_dir(working_dir) / "runs"


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    paths = [working_dir / "settings.json"]
    program_data = _program_data_dir()
    if program_data is not None:
        paths.append(program_data / _APP_DIR_NAME / "settings.json")
    paths.append(_PROJECT_ROOT / "settings.json")
    return paths
