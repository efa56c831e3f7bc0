from datetime import datetime, timedelta, timezone

import backup.retention as retention
from audit.exports import read_audit_csv
from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from backup.errors import DeletionError
from backup.retention import RetentionPolicy, apply_retention
from backup.types import BackupRequest
from backup.versions import VersionAllocator, list_versions

NOW = datetime(2024, 6, 30, 12, 0, 0, tzinfo=timezone.utc)


def _seed(root, *days_ago):
    allocator = VersionAllocator(root)
    versions = []
    for days in days_ago:
        version = allocator.allocate("docs", now=NOW - timedelta(days=days))
        (version.path / "payload.txt").write_text(f"{days} days old", encoding="utf-8")
        versions.append(version)
    return versions


def test_count_policy_keeps_newest_versions(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"
    results = [
        service.run_backup(BackupRequest(source=source_tree, root=root, set_name="docs", retention_versions=2))
        for _ in range(3)
    ]

    remaining = [version.identifier for version in list_versions(root, "docs")]
    assert remaining == [results[1].version.identifier, results[2].version.identifier]
    assert results[2].retention.removed == [results[0].version.identifier]
    assert not results[0].version.path.exists()
    assert not results[0].version.manifest_path.exists()
    assert results[2].summary.get(AuditAction.RETENTION_COUNT).count == 1


def test_age_pass_removes_only_old_versions(tmp_path):
    root = tmp_path / "backups"
    old, older, fresh = _seed(root, 40, 31, 2)
    ledger = AuditLedger()

    summary = apply_retention(root, "docs", RetentionPolicy(max_age_days=30, max_versions=20), ledger=ledger, now=NOW)

    assert summary.removed == [old.identifier, older.identifier]
    assert summary.kept == [fresh.identifier]
    records = ledger.records(AuditAction.RETENTION_AGE)
    assert [r.status for r in records] == [AuditStatus.OK, AuditStatus.OK]
    assert records[0].detail == "older than 30 day(s)"
    assert summary.freed_bytes == len("40 days old") + len("31 days old")


def test_count_pass_runs_after_age_pass(tmp_path):
    root = tmp_path / "backups"
    versions = _seed(root, 45, 5, 4, 3, 2)
    ledger = AuditLedger()

    summary = apply_retention(root, "docs", RetentionPolicy(max_age_days=30, max_versions=2), ledger=ledger, now=NOW)

    assert summary.removed == [versions[0].identifier, versions[1].identifier, versions[2].identifier]
    assert [v.identifier for v in list_versions(root, "docs")] == [versions[3].identifier, versions[4].identifier]
    assert len(ledger.records(AuditAction.RETENTION_AGE)) == 1
    count_records = ledger.records(AuditAction.RETENTION_COUNT)
    assert len(count_records) == 2
    assert count_records[0].detail == "beyond newest 2 version(s)"


def test_dry_run_reports_without_deleting(tmp_path):
    root = tmp_path / "backups"
    versions = _seed(root, 60, 10, 1)
    ledger = AuditLedger()

    summary = apply_retention(
        root, "docs", RetentionPolicy(max_age_days=30, max_versions=1), ledger=ledger, dry_run=True, now=NOW
    )

    assert summary.dry_run
    assert summary.removed == [versions[0].identifier, versions[1].identifier]
    assert all(version.path.exists() for version in versions)
    assert {r.status for r in ledger.records()} == {AuditStatus.DRYRUN}


def test_zero_threshold_disables_pass(tmp_path):
    root = tmp_path / "backups"
    _seed(root, 400, 300, 200)
    ledger = AuditLedger()

    summary = apply_retention(root, "docs", RetentionPolicy(max_age_days=0, max_versions=0), ledger=ledger, now=NOW)

    assert summary.removed == []
    assert len(list_versions(root, "docs")) == 3
    assert ledger.records() == ()


def test_failed_deletion_is_recorded_and_kept(tmp_path, monkeypatch):
    root = tmp_path / "backups"
    stuck, old, fresh = _seed(root, 90, 60, 1)
    real_remove = retention.remove_version

    def remove(version, **kwargs):
        if version.identifier == stuck.identifier:
            raise DeletionError("file locked by another process")
        return real_remove(version, **kwargs)

    monkeypatch.setattr(retention, "remove_version", remove)
    ledger = AuditLedger()

    summary = apply_retention(root, "docs", RetentionPolicy(max_age_days=30, max_versions=1), ledger=ledger, now=NOW)

    assert summary.failed == [stuck.identifier]
    assert summary.removed == [old.identifier]
    assert stuck.path.exists() and fresh.path.exists()
    errors = [r for r in ledger.records() if r.status == AuditStatus.ERROR]
    assert len(errors) == 1
    assert errors[0].detail.startswith("DeletionError:")
    assert ledger.records(AuditAction.RETENTION_COUNT) == ()


def test_run_retention_writes_audit_trail(tmp_path, make_service):
    root = tmp_path / "backups"
    _seed(root, 3, 2, 1)
    service = make_service()

    result = service.run_retention(root, "docs", retention_days=0, retention_versions=1)

    assert result.ok
    assert len(result.retention.removed) == 2
    assert result.artifacts.audit_csv.exists()
    assert len(list_versions(root, "docs")) == 1


def test_dry_run_backup_counts_the_version_it_would_create(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"
    request = dict(source=source_tree, root=root, set_name="docs", retention_versions=2)
    first, second = (service.run_backup(BackupRequest(**request)) for _ in range(2))

    preview = service.run_backup(BackupRequest(dry_run=True, **request))

    records = preview.summary.get(AuditAction.RETENTION_COUNT)
    assert records.count == 1
    [record] = [r for r in read_audit_csv(preview.artifacts.audit_csv) if r.action == AuditAction.RETENTION_COUNT]
    assert record.status == AuditStatus.DRYRUN
    assert record.target == str(first.version.path)
    assert preview.retention.removed == [first.version.identifier]
    assert preview.retention.kept == [second.version.identifier, preview.version.identifier]
    assert [v.identifier for v in list_versions(root, "docs")] == [first.version.identifier, second.version.identifier]

    real = service.run_backup(BackupRequest(**request))
    assert real.retention.removed == [first.version.identifier]
