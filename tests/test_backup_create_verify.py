import json

import pytest

from audit.exports import read_audit_csv
from audit.records import AuditAction, AuditStatus
from backup.catalog import read_catalog, read_manifest
from backup.errors import CopyEngineError, ValidationError
from backup.types import BackupRequest, SyncRequest
from backup.versions import list_versions


class _ExplodingCopier:
    def run(self, *_args, **_kwargs):
        raise CopyEngineError("robocopy aborted with exit code 16", exit_code=16)


def _request(source, root, **overrides):
    values = {"source": source, "root": root, "set_name": "docs"}
    values.update(overrides)
    return BackupRequest(**values)


def test_backup_creates_version_with_metadata(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"

    result = service.run_backup(_request(source_tree, root, verify_checksum=True))

    assert result.ok
    version = result.version
    assert (version.path / "notes" / "deep" / "plan.txt").read_text(encoding="utf-8") == "phase one"
    assert not (version.path / "scratch.tmp").exists()

    manifest = read_manifest(version.manifest_path)
    assert manifest.set_name == "docs"
    assert manifest.identifier == version.identifier
    assert manifest.verify_requested is True
    assert manifest.checksum_algorithm == "SHA256"
    assert "*.tmp" in manifest.exclude
    assert manifest.copy_exit_code == 1

    catalog = read_catalog(version.catalog_path)
    assert [entry.relative_path for entry in catalog] == ["notes/deep/plan.txt", "notes/todo.md", "report.txt"]
    assert catalog[-1].size_bytes == len("quarterly numbers")

    verified = read_audit_csv(version.verify_path)
    assert {record.status for record in verified} == {AuditStatus.OK}
    assert len(verified) == 3


def test_run_artifacts_written_to_working_dir(tmp_path, source_tree, make_service):
    service = make_service()
    result = service.run_backup(_request(source_tree, tmp_path / "backups"))

    artifacts = result.artifacts
    assert artifacts.directory.parent == service.working_dir / "exports" / "runs"
    for path in (artifacts.copy_log, artifacts.audit_csv, artifacts.audit_json, artifacts.report):
        assert path is not None and path.exists()

    payload = json.loads(artifacts.audit_json.read_text(encoding="utf-8"))
    assert payload["run"]["set"] == "docs"
    actions = {item["action"]: item for item in payload["summary"]["actions"]}
    assert actions["VersionCreated"]["count"] == 1
    assert actions["Copy"]["count"] == 3
    assert "Result: OK" in result.report
    assert str(artifacts.audit_csv) in result.report


def test_corrupted_copy_reported_as_mismatch(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"
    backup = service.run_backup(_request(source_tree, root))

    (backup.version.path / "report.txt").write_text("quarterly numberz", encoding="utf-8")
    (backup.version.path / "notes" / "todo.md").unlink()
    result = service.verify_version(root, "docs")

    statuses = {
        record.target.replace("\\", "/").rsplit("/", 1)[-1]: record.status
        for record in read_audit_csv(result.artifacts.audit_csv)
        if record.action == AuditAction.VERIFY
    }
    assert statuses == {
        "report.txt": AuditStatus.MISMATCH,
        "todo.md": AuditStatus.MISSING,
        "plan.txt": AuditStatus.OK,
    }
    assert result.status == "partial"
    assert result.verification.mismatched == 1
    assert result.verification.missing == 1
    assert "attention required" in result.report


def test_dry_run_leaves_root_untouched(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"

    result = service.run_backup(_request(source_tree, root, dry_run=True, verify_checksum=True))

    assert not root.exists()
    records = read_audit_csv(result.artifacts.audit_csv)
    created = [r for r in records if r.action == AuditAction.VERSION_CREATED]
    assert created[0].status == AuditStatus.DRYRUN
    copies = [r for r in records if r.action == AuditAction.COPY]
    assert copies and {r.status for r in copies} == {AuditStatus.DRYRUN}
    verifies = [r for r in records if r.action == AuditAction.VERIFY]
    assert [r.status for r in verifies] == [AuditStatus.SKIP]

    assert result.artifacts.manifest.parent == result.artifacts.directory
    manifest = read_manifest(result.artifacts.manifest)
    assert manifest.dry_run is True
    assert len(read_catalog(result.artifacts.catalog)) == 3


def test_validation_errors_raised_before_any_artifact(tmp_path, source_tree, make_service):
    service = make_service()
    runs = service.working_dir / "exports" / "runs"

    with pytest.raises(ValidationError):
        service.run_backup(_request(source_tree, tmp_path / "backups", set_name="bad name"))
    with pytest.raises(ValidationError):
        service.run_backup(_request(tmp_path / "missing", tmp_path / "backups"))
    with pytest.raises(ValidationError):
        service.run_backup(_request(source_tree, tmp_path / "backups", checksum_algorithm="CRC32"))
    with pytest.raises(ValidationError):
        service.run_backup(_request(source_tree, tmp_path / "backups", schedule="hourly"))

    assert not runs.exists() or not any(runs.iterdir())
    assert not (tmp_path / "backups").exists()


def test_copy_engine_failure_flushes_audit_then_raises(tmp_path, source_tree, make_service):
    service = make_service(copier=_ExplodingCopier())
    runs = service.working_dir / "exports" / "runs"

    with pytest.raises(CopyEngineError):
        service.run_backup(_request(source_tree, tmp_path / "backups"))

    [run_dir] = list(runs.iterdir())
    records = read_audit_csv(run_dir / "audit.csv")
    assert records[-1].action == AuditAction.ERROR
    assert "exit code 16" in records[-1].detail
    assert "ABORTED" in (run_dir / "summary.txt").read_text(encoding="utf-8")


def test_sync_mirrors_destination(tmp_path, source_tree, make_service):
    service = make_service()
    destination = tmp_path / "mirror"
    (destination / "old").mkdir(parents=True)
    (destination / "old" / "stale.txt").write_text("stale", encoding="utf-8")

    result = service.run_sync(SyncRequest(source=source_tree, destination=destination, verify_checksum=True))

    assert result.ok
    assert not (destination / "old").exists()
    assert (destination / "report.txt").exists()
    records = read_audit_csv(result.artifacts.audit_csv)
    deletes = [r for r in records if r.action == AuditAction.DELETE]
    assert {r.status for r in deletes} == {AuditStatus.OK}
    assert len(deletes) == 2
    assert list_versions(tmp_path, "mirror") == []
