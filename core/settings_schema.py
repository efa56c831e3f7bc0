from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "backup": {
        "retention_days": None,
        "retention_versions": None,
        "verify_checksum": None,
        "checksum_algorithm": None,
        "include": None,
        "exclude": None,
        "copy": {
            "engine",
            "robocopy_path",
            "threads",
            "retries",
            "wait_seconds",
            "timestamp_tolerance_s",
        },
    },
    "rotation": {"patterns", "min_age_days", "remove_originals"},
    "schedule": {"schtasks_path", "task_prefix", "python_executable"},
    "api": "*",
    "working_dir": None,
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key not in schema:
                yield f"{path}{key}"
                continue
            rule = schema[key]
            if rule is None or rule == "*":
                continue
            if isinstance(rule, set):
                if isinstance(value, Mapping):
                    for sub in value.keys():
                        if sub not in rule:
                            yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                yield from self._iter_unknown(value, rule, path=f"{path}{key}.")


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR", "SettingsValidator"]
