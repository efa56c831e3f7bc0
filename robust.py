"""Helpers for robust filesystem access on local disks and network shares."""

from __future__ import annotations

import errno
import os
import shutil
import stat
import sys
import unicodedata
from fnmatch import fnmatch
from pathlib import PurePosixPath
from typing import Callable, Sequence

_WINDOWS = sys.platform.startswith("win")

_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.ESTALE,
    errno.ETIMEDOUT,
    errno.EIO,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ENETRESET,
    errno.ENETDOWN,
    errno.ENETUNREACH,
}

# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION, ERROR_SEM_TIMEOUT,
# ERROR_NETNAME_DELETED, ERROR_NETWORK_BUSY, ERROR_BAD_NETPATH, ERROR_REQ_NOT_ACCEP
_TRANSIENT_WINERRORS = {32, 33, 121, 64, 54, 53, 71}


class PathEscapeError(ValueError):
    """Raised when a relative path would resolve outside its base directory."""


def normalize_path(path: str) -> str:
    return unicodedata.normalize("NFC", path)


def is_transient(exc: OSError) -> bool:
    """Return True when *exc* is worth retrying after a short wait."""

    if isinstance(exc, FileNotFoundError):
        return False
    if isinstance(exc, TimeoutError):
        return True
    if getattr(exc, "winerror", None) in _TRANSIENT_WINERRORS:
        return True
    return getattr(exc, "errno", None) in _TRANSIENT_ERRNOS


def matches_any(relative_path: str, patterns: Sequence[str]) -> bool:
    """Match *relative_path* against glob patterns by file name or full path."""

    if not patterns:
        return False
    name = relative_path.rsplit("/", 1)[-1]
    folded_name = name.casefold() if _WINDOWS else name
    folded_path = relative_path.casefold() if _WINDOWS else relative_path
    for pattern in patterns:
        folded = pattern.casefold() if _WINDOWS else pattern
        if fnmatch(folded_name, folded) or fnmatch(folded_path, folded):
            return True
    return False


def passes_filters(relative_path: str, include: Sequence[str], exclude: Sequence[str]) -> bool:
    if matches_any(relative_path, exclude):
        return False
    if not include:
        return True
    return matches_any(relative_path, include)


def safe_relative(value: str) -> str:
    """Normalise a user supplied relative path to posix form.

    Raises :class:`PathEscapeError` for absolute paths, drive letters and
    ``..`` components.
    """

    text = normalize_path(str(value).replace("\\", "/")).strip()
    if not text or text in {".", "/"}:
        raise PathEscapeError(f"empty relative path: {value!r}")
    if text.startswith("/") or (len(text) > 1 and text[1] == ":"):
        raise PathEscapeError(f"absolute path not allowed: {value!r}")
    parts = [part for part in PurePosixPath(text).parts if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise PathEscapeError(f"path escapes its base: {value!r}")
    return "/".join(parts)


def _readonly_hook(func: Callable[[str], object], path: str, error: object) -> None:
    exc = error[1] if isinstance(error, tuple) else error
    try:
        mode = os.stat(path).st_mode
    except OSError:
        raise exc  # type: ignore[misc]
    if mode & stat.S_IWRITE:
        raise exc  # type: ignore[misc]
    os.chmod(path, mode | stat.S_IWRITE)
    func(path)


def remove_tree(path: str | os.PathLike[str]) -> None:
    """Delete a directory tree, clearing read-only attributes on the way.

    Any failure that remains propagates as ``OSError``.
    """

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_readonly_hook)
    else:  # pragma: no cover - older interpreters
        shutil.rmtree(path, onerror=_readonly_hook)


__all__ = [
    "PathEscapeError",
    "is_transient",
    "matches_any",
    "normalize_path",
    "passes_filters",
    "remove_tree",
    "safe_relative",
]
