import os
from datetime import datetime, timedelta
from pathlib import Path

from boundary import LocalBoundaryControl
from config import BoundarySettings
from database import DatabaseManager
from moves.janitor import Janitor
from moves.locks import LockManager
from moves.models import MoveState, StagingArtifact
from moves.tree import entry_identity


def build_env(tmp_path: Path):
    db_paths = {"state": tmp_path / "state.sqlite"}
    manager = DatabaseManager(db_paths)
    manager.initialize()
    dest_root = tmp_path / "dest"
    (dest_root / "inbox").mkdir(parents=True)
    control = LocalBoundaryControl([BoundarySettings("1001", dest_root)])
    janitor = Janitor(control, db_paths, staleness_seconds=3600)
    return manager, control, janitor, dest_root


def make_artifact(manager: DatabaseManager, staging_root: Path, task_id: str) -> StagingArtifact:
    artifact = StagingArtifact(
        name=f"{task_id}.0123456789ab",
        parent=staging_root,
        task_id=task_id,
        created_at=datetime.utcnow().isoformat(),
    )
    manager.register_staging_artifact(artifact)
    (artifact.path / "sub").mkdir(parents=True)
    (artifact.path / "sub" / "data").write_text("partial", encoding="utf-8")
    return artifact


def failed_operation(manager: DatabaseManager, dest_root: Path):
    operation = manager.create_move_operation("/src/x", str(dest_root / "inbox"), "1001")
    manager.transition(operation.task_id, MoveState.FAILED, error_code="io_failure")
    return operation


def later() -> datetime:
    return datetime.utcnow() + timedelta(hours=2)


def test_reclaims_stale_orphan_once(tmp_path: Path) -> None:
    manager, control, janitor, dest_root = build_env(tmp_path)
    staging_root = control.staging_root("1001", dest_root / "inbox")
    operation = failed_operation(manager, dest_root)
    artifact = make_artifact(manager, staging_root, operation.task_id)

    first = janitor.run_once(now=later())
    second = janitor.run_once(now=later())

    assert first.reclaimed == 1
    assert not artifact.path.exists()
    assert manager.list_staging_artifacts() == []
    assert second.reclaimed == 0
    assert second.scanned == 0
    manager.close()


def test_fresh_artifact_is_kept(tmp_path: Path) -> None:
    manager, control, janitor, dest_root = build_env(tmp_path)
    staging_root = control.staging_root("1001", dest_root / "inbox")
    operation = failed_operation(manager, dest_root)
    artifact = make_artifact(manager, staging_root, operation.task_id)

    stats = janitor.run_once()

    assert stats.skipped_fresh == 1
    assert artifact.path.exists()
    manager.close()


def test_never_removes_artifact_of_locked_operation(tmp_path: Path) -> None:
    manager, control, janitor, dest_root = build_env(tmp_path)
    staging_root = control.staging_root("1001", dest_root / "inbox")
    operation = failed_operation(manager, dest_root)
    artifact = make_artifact(manager, staging_root, operation.task_id)
    LockManager(manager).acquire(Path("/src/x"), operation.task_id)

    stats = janitor.run_once(now=later() + timedelta(days=30))

    assert stats.skipped_live == 1
    assert stats.reclaimed == 0
    assert artifact.path.exists()
    manager.close()


def test_never_removes_artifact_of_active_operation(tmp_path: Path) -> None:
    manager, control, janitor, dest_root = build_env(tmp_path)
    staging_root = control.staging_root("1001", dest_root / "inbox")
    operation = manager.create_move_operation("/src/x", str(dest_root / "inbox"), "1001")
    for state in (MoveState.VALIDATING, MoveState.LOCKED, MoveState.STAGING):
        manager.transition(operation.task_id, state)
    artifact = make_artifact(manager, staging_root, operation.task_id)

    stats = janitor.run_once(now=later())

    assert stats.skipped_live == 1
    assert artifact.path.exists()
    manager.close()


def test_unregistered_leftover_reclaimed_on_age(tmp_path: Path) -> None:
    manager, control, janitor, dest_root = build_env(tmp_path)
    staging_root = control.staging_root("1001", dest_root / "inbox")
    leftover = staging_root / "something-else"
    leftover.mkdir()
    os.chmod(leftover, 0o500)

    stats = janitor.run_once(now=later())

    assert stats.reclaimed == 1
    assert not leftover.exists()
    manager.close()


def completed_with_pending_cleanup(manager: DatabaseManager, dest_root: Path, source: Path):
    source.mkdir(parents=True)
    (source / "a.txt").write_text("old", encoding="utf-8")
    os.utime(source, ns=(1_500_000_000_000_000_000, 1_500_000_000_000_000_000))
    (dest_root / "inbox" / "project").mkdir()
    operation = manager.create_move_operation(str(source), str(dest_root / "inbox"), "1001")
    manager.set_source_identity(operation.task_id, entry_identity(source))
    for state in (
        MoveState.VALIDATING,
        MoveState.LOCKED,
        MoveState.STAGING,
        MoveState.VERIFYING,
        MoveState.COMMITTING,
        MoveState.COMPLETED,
    ):
        manager.transition(operation.task_id, state)
    manager.set_cleanup_pending(operation.task_id, True, warning="source removal failed")
    return operation


def test_finishes_pending_source_cleanup(tmp_path: Path) -> None:
    manager, _, janitor, dest_root = build_env(tmp_path)
    source = tmp_path / "src" / "project"
    operation = completed_with_pending_cleanup(manager, dest_root, source)

    stats = janitor.run_once()

    assert stats.sources_cleaned == 1
    assert not source.exists()
    assert manager.get_move_operation(operation.task_id).cleanup_pending is False
    assert janitor.run_once().sources_cleaned == 0
    manager.close()


def test_replaced_source_is_left_in_place(tmp_path: Path) -> None:
    manager, _, janitor, dest_root = build_env(tmp_path)
    source = tmp_path / "src" / "project"
    operation = completed_with_pending_cleanup(manager, dest_root, source)
    (source / "a.txt").unlink()
    source.rmdir()
    source.mkdir()
    (source / "new.txt").write_text("fresh work", encoding="utf-8")

    stats = janitor.run_once()

    assert stats.sources_cleaned == 0
    assert stats.errors == 1
    assert (source / "new.txt").read_text(encoding="utf-8") == "fresh work"
    record = manager.get_move_operation(operation.task_id)
    assert record.cleanup_pending is False
    assert "different entry" in record.warning
    assert len(manager.list_file_operations(operation.task_id, status="skipped")) == 1
    manager.close()
