from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict

import pytest

from backup.api import BackupService
from core.settings import merge_defaults


class StepClock:
    """Deterministic UTC clock advancing by a fixed step on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(minutes=1)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


def write_tree(base: Path, files: Dict[str, str]) -> Path:
    for rel, content in files.items():
        path = base / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return base


@pytest.fixture
def clock() -> StepClock:
    return StepClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    return write_tree(
        tmp_path / "source",
        {
            "report.txt": "quarterly numbers",
            "notes/todo.md": "- call the bank\n",
            "notes/deep/plan.txt": "phase one",
            "scratch.tmp": "ignored by default excludes",
        },
    )


@pytest.fixture
def make_service(tmp_path: Path, clock: StepClock):
    def _factory(**kwargs) -> BackupService:
        settings = merge_defaults({})
        settings["backup"]["copy"]["wait_seconds"] = 0
        settings["backup"]["copy"]["threads"] = 2
        kwargs.setdefault("working_dir", tmp_path / "work")
        kwargs.setdefault("clock", clock)
        return BackupService(settings=settings, **kwargs)

    return _factory
