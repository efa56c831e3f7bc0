import pytest

from audit.exports import read_audit_csv
from audit.ledger import AuditLedger
from audit.records import AuditAction, AuditStatus
from backup.errors import BackupRestoreError, ValidationError
from backup.restore import normalize_subpaths, restore_version
from backup.transfer import CopyOptions, DifferentialCopier
from backup.types import BackupRequest, RestoreRequest


@pytest.fixture
def backed_up(tmp_path, source_tree, make_service):
    service = make_service()
    root = tmp_path / "backups"
    result = service.run_backup(BackupRequest(source=source_tree, root=root, set_name="docs"))
    return service, root, result.version


def _restore_records(result):
    return [r for r in read_audit_csv(result.artifacts.audit_csv) if r.action == AuditAction.RESTORE]


def test_full_restore_round_trip(tmp_path, backed_up):
    service, root, version = backed_up
    target = tmp_path / "restored"
    target.mkdir()
    (target / "keep.txt").write_text("local only", encoding="utf-8")

    result = service.run_restore(RestoreRequest(root=root, set_name="docs", target=target, verify_checksum=True))

    assert result.ok
    assert result.version.identifier == version.identifier
    assert (target / "report.txt").read_text(encoding="utf-8") == "quarterly numbers"
    assert (target / "notes" / "deep" / "plan.txt").read_text(encoding="utf-8") == "phase one"
    assert (target / "keep.txt").exists()
    assert result.verification.passed
    assert result.verification.checked == 3
    extras = [r for r in _restore_records(result) if r.detail == "extra in destination"]
    assert [r.status for r in extras] == [AuditStatus.SKIP]


def test_restore_selected_subpaths(tmp_path, backed_up):
    service, root, _ = backed_up
    target = tmp_path / "restored"

    result = service.run_restore(
        RestoreRequest(root=root, set_name="docs", target=target, subpaths=("notes/deep/plan.txt", "missing/file.txt"))
    )

    assert (target / "notes" / "deep" / "plan.txt").exists()
    assert not (target / "notes" / "todo.md").exists()
    assert not (target / "report.txt").exists()
    skipped = [r for r in _restore_records(result) if r.status == AuditStatus.SKIP]
    assert [r.detail for r in skipped] == ["subpath not present in version"]
    assert result.ok


def test_restore_directory_subpath(tmp_path, backed_up):
    service, root, _ = backed_up
    target = tmp_path / "restored"

    service.run_restore(RestoreRequest(root=root, set_name="docs", target=target, subpaths=("notes",)))

    assert (target / "notes" / "todo.md").exists()
    assert (target / "notes" / "deep" / "plan.txt").exists()
    assert not (target / "report.txt").exists()


def test_restore_picks_requested_version(tmp_path, source_tree, backed_up):
    service, root, first = backed_up
    (source_tree / "report.txt").write_text("revised numbers", encoding="utf-8")
    service.run_backup(BackupRequest(source=source_tree, root=root, set_name="docs"))

    latest = tmp_path / "latest"
    service.run_restore(RestoreRequest(root=root, set_name="docs", target=latest))
    assert (latest / "report.txt").read_text(encoding="utf-8") == "revised numbers"

    earlier = tmp_path / "earlier"
    service.run_restore(RestoreRequest(root=root, set_name="docs", target=earlier, identifier=first.identifier))
    assert (earlier / "report.txt").read_text(encoding="utf-8") == "quarterly numbers"


def test_restore_dry_run_leaves_target_absent(tmp_path, backed_up):
    service, root, _ = backed_up
    target = tmp_path / "restored"

    result = service.run_restore(
        RestoreRequest(root=root, set_name="docs", target=target, dry_run=True, verify_checksum=True)
    )

    assert not target.exists()
    assert {r.status for r in _restore_records(result)} == {AuditStatus.DRYRUN}
    verifies = [r for r in read_audit_csv(result.artifacts.audit_csv) if r.action == AuditAction.VERIFY]
    assert [r.status for r in verifies] == [AuditStatus.SKIP]


def test_restore_rejects_escaping_subpath(tmp_path, backed_up):
    service, root, _ = backed_up
    runs = service.working_dir / "exports" / "runs"
    before = sorted(runs.iterdir())

    with pytest.raises(ValidationError):
        service.run_restore(RestoreRequest(root=root, set_name="docs", target=tmp_path / "t", subpaths=("../x",)))
    with pytest.raises(ValidationError):
        service.run_restore(
            RestoreRequest(root=root, set_name="docs", target=tmp_path / "t", identifier="1999/01/01/000000")
        )

    assert sorted(runs.iterdir()) == before


def test_normalize_subpaths_deduplicates():
    assert normalize_subpaths(["notes/", "notes", "./report.txt"]) == ["notes", "report.txt"]


def test_restore_version_never_mirrors(tmp_path, backed_up):
    _, root, _ = backed_up
    target = tmp_path / "restored"
    target.mkdir()
    (target / "stale.txt").write_text("stays", encoding="utf-8")
    ledger = AuditLedger()

    outcome = restore_version(
        root,
        "docs",
        target,
        copier=DifferentialCopier(),
        options=CopyOptions(mirror=True, threads=1, wait_seconds=0),
        ledger=ledger,
    )

    assert (target / "stale.txt").exists()
    assert ledger.records(AuditAction.DELETE) == ()
    assert outcome.exit_code & 1


def test_restore_onto_file_target_fails(tmp_path, backed_up):
    service, root, _ = backed_up
    target = tmp_path / "occupied"
    target.write_text("not a directory", encoding="utf-8")
    runs = service.working_dir / "exports" / "runs"
    before = set(runs.iterdir())

    with pytest.raises(BackupRestoreError):
        service.run_restore(RestoreRequest(root=root, set_name="docs", target=target))

    assert target.read_text(encoding="utf-8") == "not a directory"
    [run_dir] = set(runs.iterdir()) - before
    assert (run_dir / "audit.csv").exists()


class _DamagingCopier(DifferentialCopier):
    """Copies normally, then damages the restored tree before verification."""

    def run(self, source, destination, options, *, log_path=None):
        result = super().run(source, destination, options, log_path=log_path)
        (destination / "report.txt").write_text("tampered numbers", encoding="utf-8")
        (destination / "notes" / "todo.md").unlink()
        return result


def test_restore_verification_reports_damaged_files(tmp_path, backed_up, make_service):
    _, root, version = backed_up
    service = make_service(copier=_DamagingCopier())
    target = tmp_path / "restored"

    result = service.run_restore(RestoreRequest(root=root, set_name="docs", target=target, verify_checksum=True))

    verification = result.verification
    assert not verification.passed
    assert (verification.checked, verification.ok, verification.mismatched, verification.missing) == (3, 1, 1, 1)
    statuses = {
        r.target: r.status for r in read_audit_csv(result.artifacts.audit_csv) if r.action == AuditAction.VERIFY
    }
    assert statuses == {
        str(target / "report.txt"): AuditStatus.MISMATCH,
        str(target / "notes" / "todo.md"): AuditStatus.MISSING,
        str(target / "notes" / "deep" / "plan.txt"): AuditStatus.OK,
    }
