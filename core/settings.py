from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict

from .paths import get_default_settings_paths, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_EXCLUDE_PATTERNS",
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "load_settings",
    "merge_defaults",
    "save_settings",
]

LOGGER = logging.getLogger("winbackup.settings")

SETTINGS_VERSION = 1

DEFAULT_EXCLUDE_PATTERNS = [
    "*.tmp",
    "*.lck",
    "*.lock",
    "Thumbs.db",
    "ehthumbs.db",
    "ehthumbs_vista.db",
    "thumbcache_*.db",
]


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup": {
        "retention_days": 30,
        "retention_versions": 20,
        "verify_checksum": False,
        "checksum_algorithm": "SHA256",
        "include": ["*"],
        "exclude": list(DEFAULT_EXCLUDE_PATTERNS),
        "copy": {
            "engine": "native",
            "robocopy_path": "robocopy",
            "threads": 8,
            "retries": 3,
            "wait_seconds": 5,
            "timestamp_tolerance_s": 2.0,
        },
    },
    "rotation": {
        "patterns": ["*.log"],
        "min_age_days": 1,
        "remove_originals": True,
    },
    "schedule": {
        "schtasks_path": "schtasks",
        "task_prefix": "WinBackup",
        "python_executable": None,
    },
    "api": {
        "host": "127.0.0.1",
        "port": 27183,
        "api_key": None,
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                result[key] = _merge(value, current if isinstance(current, dict) else {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def _apply_migrations(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        version_int = int(settings.get("version"))
    except (TypeError, ValueError):
        version_int = 0
    if version_int < SETTINGS_VERSION:
        settings["version"] = SETTINGS_VERSION
    return settings


def _log_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    LOGGER.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))
    logs_dir = get_logs_dir(working_dir)
    target = logs_dir / "settings_unknown.json"
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as handle:
            json.dump({"ts": time.time(), "unknown": unknown}, handle, ensure_ascii=False, indent=2)
    except OSError as exc:
        LOGGER.warning("Cannot record unknown settings keys in %s: %s", target, exc)


def load_settings(working_dir: Path) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            LOGGER.warning("Skipping malformed settings file %s", candidate)
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    merged = _apply_migrations(merge_defaults(data))
    merged.setdefault("working_dir", str(working_dir))
    _log_unknown_keys(merged, working_dir)
    return merged


def save_settings(settings: Dict[str, Any], working_dir: Path) -> None:
    merged = _apply_migrations(merge_defaults(dict(settings)))
    merged.setdefault("working_dir", str(working_dir))
    path = working_dir / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(merged, handle, ensure_ascii=False, indent=2)

