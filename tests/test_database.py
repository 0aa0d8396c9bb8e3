from datetime import datetime
from pathlib import Path

import pytest

from database import DatabaseManager
from moves.errors import InvalidTransition
from moves.models import MoveState, StagingArtifact


def build_db_paths(root: Path) -> dict[str, Path]:
    return {"state": root / "state.sqlite"}


def test_move_operation_lifecycle(tmp_path: Path) -> None:
    manager = DatabaseManager(build_db_paths(tmp_path))
    manager.initialize()

    operation = manager.create_move_operation("/src/a", "/dst", "1001")
    assert operation.state == MoveState.PENDING
    assert len(operation.task_id) == 32

    for state in (
        MoveState.VALIDATING,
        MoveState.LOCKED,
        MoveState.STAGING,
        MoveState.VERIFYING,
        MoveState.COMMITTING,
        MoveState.COMPLETED,
    ):
        operation = manager.transition(operation.task_id, state)
        assert operation.state == state

    with pytest.raises(InvalidTransition):
        manager.transition(operation.task_id, MoveState.FAILED)
    manager.close()


def test_illegal_transitions_are_rejected(tmp_path: Path) -> None:
    manager = DatabaseManager(build_db_paths(tmp_path))
    manager.initialize()
    operation = manager.create_move_operation("/src/a", "/dst", "1001")

    with pytest.raises(InvalidTransition):
        manager.transition(operation.task_id, MoveState.STAGING)

    manager.transition(operation.task_id, MoveState.VALIDATING)
    failed = manager.transition(
        operation.task_id, MoveState.FAILED, error_code="not_found", error_detail="Source does not exist"
    )
    assert failed.error_code == "not_found"
    assert failed.error_detail == "Source does not exist"

    with pytest.raises(InvalidTransition):
        manager.transition(operation.task_id, MoveState.VALIDATING)
    assert manager.move_state_summary() == {"failed": 1}
    manager.close()


def test_progress_and_cleanup_flags(tmp_path: Path) -> None:
    manager = DatabaseManager(build_db_paths(tmp_path))
    manager.initialize()
    operation = manager.create_move_operation("/src/a", "/dst", "1001")

    manager.update_progress(operation.task_id, bytes_total=100, inodes_total=3)
    manager.update_progress(operation.task_id, bytes_done=40, inodes_done=1)
    assert operation.source_identity is None
    manager.set_source_identity(operation.task_id, "2049:1234:1500000000000000000")
    manager.set_cleanup_pending(operation.task_id, True, warning="source left behind")

    stored = manager.get_move_operation(operation.task_id)
    assert stored.source_identity == "2049:1234:1500000000000000000"
    assert (stored.bytes_total, stored.bytes_done) == (100, 40)
    assert (stored.inodes_total, stored.inodes_done) == (3, 1)
    assert stored.cleanup_pending is True
    assert stored.warning == "source left behind"
    # Only completed operations are candidates for source cleanup.
    assert manager.list_cleanup_pending() == []
    manager.close()


def test_locks_are_all_or_nothing(tmp_path: Path) -> None:
    manager = DatabaseManager(build_db_paths(tmp_path))
    manager.initialize()

    assert manager.try_insert_locks(["/a", "/b"], "task1") is None
    assert manager.try_insert_locks(["/c", "/b"], "task2") == "/b"
    assert manager.get_lock("/c") is None
    assert manager.get_lock("/a").task_id == "task1"
    assert len(manager.list_locks("task1")) == 2

    assert manager.delete_locks("task1") == 2
    assert manager.delete_locks("task1") == 0
    assert manager.list_locks() == []
    manager.close()


def test_staging_registry_and_audit(tmp_path: Path) -> None:
    manager = DatabaseManager(build_db_paths(tmp_path))
    manager.initialize()
    artifact = StagingArtifact(
        name="abc.def",
        parent=tmp_path / "staging",
        task_id="abc",
        created_at=datetime.utcnow().isoformat(),
    )

    manager.register_staging_artifact(artifact)
    stored = manager.get_staging_artifact("abc.def")
    assert stored is not None
    assert stored.path == tmp_path / "staging" / "abc.def"
    assert manager.list_staging_artifacts("other") == []

    manager.remove_staging_artifact("abc.def")
    assert manager.list_staging_artifacts() == []

    manager.record_file_operation("abc", "commit_rename", "/s", "/d", "completed", size=10)
    manager.record_file_operation("abc", "remove_source", "/s", None, "failed", error_message="busy")
    failures = manager.list_file_operations(task_id="abc", status="failed")
    assert len(failures) == 1
    assert failures[0]["action"] == "remove_source"
    assert failures[0]["error_message"] == "busy"
    manager.close()
