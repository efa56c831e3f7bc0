import json
import logging

import pytest

from backup.cli import EXIT_OK, EXIT_VALIDATION, build_parser, cli, format_versions


@pytest.fixture(autouse=True)
def _restore_log_handlers():
    logger = logging.getLogger("winbackup")
    before = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()


def _base(tmp_path):
    return ["--working-dir", str(tmp_path / "work")]


def test_backup_command_prints_report(tmp_path, source_tree, capsys):
    root = tmp_path / "backups"
    code = cli(_base(tmp_path) + ["backup", "--source", str(source_tree), "--root", str(root), "--set", "docs"])

    assert code == EXIT_OK
    out = capsys.readouterr().out
    assert out.startswith("WinBackup backup run")
    assert "Result: OK" in out
    assert (tmp_path / "work" / "logs" / "winbackup.log.jsonl").exists()


def test_json_output_and_listing(tmp_path, source_tree, capsys):
    root = tmp_path / "backups"
    code = cli(
        _base(tmp_path)
        + ["--json", "backup", "--source", str(source_tree), "--root", str(root), "--set", "docs", "--verify-checksum"]
    )
    assert code == EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "success"
    assert payload["verification"]["passed"] is True

    assert cli(_base(tmp_path) + ["--json", "list", "--root", str(root), "--set", "docs"]) == EXIT_OK
    listed = json.loads(capsys.readouterr().out)
    assert [item["identifier"] for item in listed] == [payload["version"]["identifier"]]


def test_validation_error_exit_code(tmp_path, source_tree, capsys):
    code = cli(
        _base(tmp_path) + ["backup", "--source", str(source_tree), "--root", str(tmp_path / "b"), "--set", "bad set"]
    )
    assert code == EXIT_VALIDATION
    assert capsys.readouterr().out.startswith("error: Invalid backup set name")


def test_parser_options():
    args = build_parser().parse_args(
        [
            "restore",
            "--root",
            "E:/b",
            "--set",
            "docs",
            "--target",
            "C:/r",
            "--path",
            "notes",
            "--path",
            "report.txt",
            "--no-verify-checksum",
        ]
    )
    assert args.subpaths == ["notes", "report.txt"]
    assert args.verify_checksum is False
    assert args.identifier is None

    rotate = build_parser().parse_args(["rotate-logs", "--log-dir", "L", "--root", "R", "--set", "logs", "--keep-originals"])
    assert rotate.remove_originals is False
    assert build_parser().parse_args(["sync", "--source", "a", "--destination", "b"]).mirror is True


def test_format_versions_empty():
    assert format_versions([]) == "No versions found"
