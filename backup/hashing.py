"""File digests for integrity verification."""
from __future__ import annotations

import hashlib
from pathlib import Path

from core.paths import to_long_path

from .errors import ValidationError

SUPPORTED_ALGORITHMS = ("SHA256", "SHA1", "MD5")
DEFAULT_ALGORITHM = "SHA256"
_CHUNK_SIZE = 1024 * 1024


def normalize_algorithm(name: str | None) -> str:
    if name is None or not str(name).strip():
        return DEFAULT_ALGORITHM
    value = str(name).strip().upper().replace("-", "")
    if value not in SUPPORTED_ALGORITHMS:
        raise ValidationError(
            f"Unsupported checksum algorithm {name!r}; expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
        )
    return value


def file_digest(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    digest = hashlib.new(normalize_algorithm(algorithm).lower())
    with open(to_long_path(path), "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["DEFAULT_ALGORITHM", "SUPPORTED_ALGORITHMS", "file_digest", "normalize_algorithm"]
