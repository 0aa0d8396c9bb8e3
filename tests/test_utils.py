import os
import time
from pathlib import Path

import pytest

from config import AppConfig
from database import DatabaseManager
from moves.errors import OperationCancelled
from utils import ProgressReporter, ResourceMonitor, is_locally_resident
from utils.cancellation import CancelToken
from utils.instance_guard import InstanceLockError, acquire_instance_lock


def test_cancel_token_time_limit() -> None:
    token = CancelToken()
    token.check("/anything")

    token.cancel_after(0.05)
    deadline = time.monotonic() + 5
    while not token.cancelled and time.monotonic() < deadline:
        time.sleep(0.01)

    with pytest.raises(OperationCancelled) as excinfo:
        token.check("/anything")
    assert "time limit" in str(excinfo.value)
    assert excinfo.value.code == "cancelled"


def test_progress_snapshot_counts(tmp_path: Path) -> None:
    db_paths = {"state": tmp_path / "state.sqlite"}
    manager = DatabaseManager(db_paths)
    manager.initialize()
    operation = manager.create_move_operation("/src/a", "/dst", "1001")
    manager.try_insert_locks(["/src/a"], operation.task_id)
    manager.close()

    snapshot = ProgressReporter(db_paths).snapshot()

    assert snapshot.state_summary == {"pending": 1}
    assert snapshot.locks_held == 1
    assert snapshot.staging_artifacts == 0
    assert [item.task_id for item in snapshot.active] == [operation.task_id]


def test_symlinks_count_as_resident(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    os.symlink(target, tmp_path / "link")

    assert is_locally_resident(target)
    assert is_locally_resident(tmp_path / "link")


def test_resource_monitor_disabled_without_limits(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("resource_limits:\n  max_cpu_percent: 0\n", encoding="utf-8")
    assert ResourceMonitor.from_config(AppConfig.load(config_path)) is None

    config_path.write_text("resource_limits:\n  max_cpu_percent: 90\n", encoding="utf-8")
    monitor = ResourceMonitor.from_config(AppConfig.load(config_path))
    assert monitor is not None
    assert monitor.max_cpu_percent == 90


@pytest.mark.skipif(os.name == "nt", reason="flock semantics differ on Windows")
def test_instance_lock_is_exclusive(tmp_path: Path) -> None:
    lock_path = tmp_path / "janitor.lock"
    held = acquire_instance_lock(lock_path)
    try:
        with pytest.raises(InstanceLockError):
            acquire_instance_lock(lock_path)
    finally:
        held.release()
    acquire_instance_lock(lock_path).release()
