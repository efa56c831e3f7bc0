import errno
import os
import subprocess
from pathlib import Path

import pytest

import backup.transfer as transfer
from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from backup.errors import CopyEngineError, ValidationError
from backup.transfer import (
    EXIT_COPIED,
    EXIT_FAILED,
    CopyAction,
    CopyOptions,
    DifferentialCopier,
    build_robocopy_command,
    check_engine_filters,
    record_decisions,
)

from conftest import write_tree


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _options(**overrides) -> CopyOptions:
    values = {"exclude": ("*.tmp",), "threads": 2, "retries": 2, "wait_seconds": 0.5}
    values.update(overrides)
    return CopyOptions(**values)


def _actions(result):
    return {decision.relative_path: decision.action for decision in result.decisions}


def test_first_copy_transfers_filtered_tree(tmp_path, source_tree):
    destination = tmp_path / "dest"
    result = DifferentialCopier().run(source_tree, destination, _options())

    assert (destination / "report.txt").read_text(encoding="utf-8") == "quarterly numbers"
    assert (destination / "notes" / "deep" / "plan.txt").exists()
    assert not (destination / "scratch.tmp").exists()
    assert result.stats.copied == 3
    assert result.exit_code == EXIT_COPIED
    assert result.status == "success"


def test_second_copy_is_differential(tmp_path, source_tree):
    destination = tmp_path / "dest"
    copier = DifferentialCopier()
    copier.run(source_tree, destination, _options())

    (source_tree / "report.txt").write_text("restated numbers, longer", encoding="utf-8")
    result = copier.run(source_tree, destination, _options())

    actions = _actions(result)
    assert actions["report.txt"] == CopyAction.UPDATE
    assert actions["notes/todo.md"] == CopyAction.SKIP
    assert result.stats.updated == 1
    assert result.stats.skipped == 2
    assert (destination / "report.txt").read_text(encoding="utf-8") == "restated numbers, longer"


def test_extra_files_kept_without_mirror_and_removed_with_mirror(tmp_path, source_tree):
    destination = write_tree(tmp_path / "dest", {"stale.txt": "old", "gone/inner.txt": "old"})
    copier = DifferentialCopier()

    result = copier.run(source_tree, destination, _options())
    assert _actions(result)["stale.txt"] == CopyAction.EXTRA
    assert (destination / "stale.txt").exists()

    result = copier.run(source_tree, destination, _options(mirror=True))
    assert _actions(result)["stale.txt"] == CopyAction.DELETE
    assert not (destination / "stale.txt").exists()
    assert not (destination / "gone").exists()
    assert result.stats.deleted == 3


def test_simulate_changes_nothing(tmp_path, source_tree):
    destination = tmp_path / "dest"
    result = DifferentialCopier().run(source_tree, destination, _options(simulate=True))

    assert not destination.exists()
    assert {d.outcome for d in result.decisions} == {"dryrun"}
    assert result.simulated


def test_transient_errors_are_retried(tmp_path, source_tree, monkeypatch):
    real_copy = transfer.shutil.copy2
    failures = {"report.txt": 2}

    def flaky_copy(src, dst, *args, **kwargs):
        name = os.path.basename(str(src))
        if failures.get(name, 0) > 0:
            failures[name] -= 1
            raise OSError(errno.EBUSY, "file in use", str(src))
        return real_copy(src, dst, *args, **kwargs)

    monkeypatch.setattr(transfer.shutil, "copy2", flaky_copy)
    sleep = _SleepRecorder()
    result = DifferentialCopier(sleep=sleep).run(source_tree, tmp_path / "dest", _options(threads=1))

    decision = next(d for d in result.decisions if d.relative_path == "report.txt")
    assert decision.outcome == "ok"
    assert decision.attempts == 3
    assert sleep.calls == [0.5, 0.5]
    assert result.status == "success"


def test_permanent_failure_marks_partial(tmp_path, source_tree, monkeypatch):
    real_copy = transfer.shutil.copy2

    def denied(src, dst, *args, **kwargs):
        if os.path.basename(str(src)) == "todo.md":
            raise PermissionError(errno.EACCES, "access denied", str(src))
        return real_copy(src, dst, *args, **kwargs)

    monkeypatch.setattr(transfer.shutil, "copy2", denied)
    sleep = _SleepRecorder()
    result = DifferentialCopier(sleep=sleep).run(source_tree, tmp_path / "dest", _options())

    assert result.exit_code & EXIT_FAILED
    assert result.status == "partial"
    assert [d.relative_path for d in result.failures()] == ["notes/todo.md"]
    assert sleep.calls == []

    ledger = AuditLedger()
    record_decisions(ledger, result)
    errors = [r for r in ledger.records(AuditAction.COPY) if r.status == AuditStatus.ERROR]
    assert len(errors) == 1
    assert "access denied" in errors[0].detail


def test_missing_source_is_engine_error(tmp_path):
    with pytest.raises(CopyEngineError):
        DifferentialCopier().run(tmp_path / "nope", tmp_path / "dest", _options())


def test_unknown_engine_is_engine_error(tmp_path, source_tree):
    with pytest.raises(CopyEngineError):
        DifferentialCopier().run(source_tree, tmp_path / "dest", _options(engine="xcopy"))


def test_robocopy_command_line():
    options = _options(mirror=True, simulate=True, threads=16, retries=1, wait_seconds=2, exclude=("*.tmp", "*.bak"))
    command = build_robocopy_command(Path("C:/src"), Path("D:/dst"), options)

    assert command[:4] == ["robocopy", str(Path("C:/src")), str(Path("D:/dst")), "*"]
    assert "/MIR" in command and "/E" not in command
    assert "/MT:16" in command and "/R:1" in command and "/W:2" in command
    assert command[command.index("/XF") + 1 : command.index("/XF") + 3] == ["*.tmp", "*.bak"]
    assert command[-1] == "/L"


def test_robocopy_launch_failure_raises(tmp_path, source_tree):
    def runner(*_args, **_kwargs):
        raise FileNotFoundError("robocopy not found")

    copier = DifferentialCopier(runner=runner)
    with pytest.raises(CopyEngineError):
        copier.run(source_tree, tmp_path / "dest", _options(engine="robocopy"))


def test_robocopy_fatal_exit_code_raises(tmp_path, source_tree):
    def runner(command, **_kwargs):
        return subprocess.CompletedProcess(command, 16, stdout="ERROR : Invalid Parameter", stderr="")

    with pytest.raises(CopyEngineError) as info:
        DifferentialCopier(runner=runner).run(source_tree, tmp_path / "dest", _options(engine="robocopy"))
    assert info.value.exit_code == 16


def test_robocopy_outcomes_confirmed_by_stat(tmp_path, source_tree):
    destination = tmp_path / "dest"

    def runner(command, **_kwargs):
        # copy only one file, as if robocopy skipped the rest
        target = destination / "report.txt"
        target.parent.mkdir(parents=True, exist_ok=True)
        transfer.shutil.copy2(source_tree / "report.txt", target)
        return subprocess.CompletedProcess(command, 1, stdout="Files : 1", stderr="")

    log_path = tmp_path / "copy.log"
    result = DifferentialCopier(runner=runner).run(
        source_tree, destination, _options(engine="robocopy"), log_path=log_path
    )

    outcomes = {d.relative_path: d.outcome for d in result.decisions}
    assert outcomes["report.txt"] == "ok"
    assert outcomes["notes/todo.md"] == "error"
    assert result.exit_code & EXIT_FAILED
    assert "Files : 1" in log_path.read_text(encoding="utf-8")


def test_mirror_replaces_file_occupying_source_directory(tmp_path):
    source = write_tree(tmp_path / "src", {"a/x.txt": "inside a"})
    destination = write_tree(tmp_path / "dst", {"a": "a file where a folder belongs"})

    result = DifferentialCopier().run(source, destination, _options(mirror=True))

    assert result.status == "success"
    assert (destination / "a" / "x.txt").read_text(encoding="utf-8") == "inside a"
    assert result.decisions[0].relative_path == "a"
    assert result.decisions[0].action == CopyAction.DELETE
    outcomes = {(d.relative_path, d.action, d.outcome) for d in result.decisions}
    assert outcomes == {("a", CopyAction.DELETE, "ok"), ("a/x.txt", CopyAction.COPY, "ok")}

    ledger = AuditLedger()
    record_decisions(ledger, result)
    assert [(r.action, r.status) for r in ledger.records(AuditAction.DELETE)] == [(AuditAction.DELETE, AuditStatus.OK)]


def test_file_occupying_source_directory_kept_without_mirror(tmp_path):
    source = write_tree(tmp_path / "src", {"a/x.txt": "inside a"})
    destination = write_tree(tmp_path / "dst", {"a": "a file where a folder belongs"})

    result = DifferentialCopier().run(source, destination, _options())

    assert (destination / "a").is_file()
    assert CopyAction.DELETE not in _actions(result).values()
    assert result.status == "partial"


def test_robocopy_rejects_path_scoped_filters(tmp_path, source_tree):
    calls = []

    def runner(command, **_kwargs):
        calls.append(command)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    with pytest.raises(ValidationError, match="notes/\\*"):
        DifferentialCopier(runner=runner).run(
            source_tree, tmp_path / "dest", _options(engine="robocopy", include=("notes/*",))
        )
    assert calls == []

    check_engine_filters("native", ("notes/*",), ("cache/*",))
    with pytest.raises(ValidationError):
        check_engine_filters("robocopy", ("*",), ("cache/*",))
    check_engine_filters("robocopy", ("*.txt",), ("*.tmp",))


def test_robocopy_command_keeps_file_name_includes():
    command = build_robocopy_command(Path("C:/src"), Path("D:/dst"), _options(include=("*.txt", "*.md")))
    assert command[3:5] == ["*.txt", "*.md"]
