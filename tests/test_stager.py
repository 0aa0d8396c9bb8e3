import os
import stat
from pathlib import Path

import pytest

from boundary import LocalBoundaryControl
from config import BoundarySettings
from database import DatabaseManager
from moves.errors import ConfigurationError, OperationCancelled, StagingFailedError
from moves.stager import Stager
from utils.cancellation import CancelToken


class SplitDomainControl(LocalBoundaryControl):
    def placement_domain(self, path: Path) -> str:
        return "staging" if self.staging_dir_name in str(path) else "destination"


def build_env(tmp_path: Path) -> tuple[DatabaseManager, LocalBoundaryControl, Path, Path]:
    manager = DatabaseManager({"state": tmp_path / "state.sqlite"})
    manager.initialize()
    dest_root = tmp_path / "dest"
    (dest_root / "inbox").mkdir(parents=True)
    control = LocalBoundaryControl([BoundarySettings("1001", dest_root)])
    source = tmp_path / "src" / "project"
    (source / "nested" / "deep").mkdir(parents=True)
    (source / "a.txt").write_text("alpha\n" * 50, encoding="utf-8")
    (source / "empty").write_bytes(b"")
    (source / "nested" / "deep" / "b.bin").write_bytes(os.urandom(70000))
    os.symlink("../a.txt", source / "nested" / "link")
    os.chmod(source / "a.txt", 0o640)
    os.utime(source / "a.txt", ns=(1_600_000_000_000_000_000, 1_600_000_000_123_456_789))
    os.utime(source / "nested", ns=(1_500_000_000_000_000_000, 1_500_000_000_000_000_000))
    return manager, control, source, dest_root


def test_stage_copies_tree_with_metadata(tmp_path: Path) -> None:
    manager, control, source, dest_root = build_env(tmp_path)
    operation = manager.create_move_operation(str(source), str(dest_root / "inbox"), "1001")

    result = Stager(control, manager, chunk_bytes=4096).stage(operation)
    staged = result.artifact.path

    assert staged.parent == dest_root / ".quota_mover_staging"
    assert staged.name.startswith(operation.task_id + ".")
    assert (staged / "a.txt").read_text(encoding="utf-8") == "alpha\n" * 50
    assert (staged / "empty").read_bytes() == b""
    assert (staged / "nested" / "deep" / "b.bin").read_bytes() == (
        source / "nested" / "deep" / "b.bin"
    ).read_bytes()
    assert os.readlink(staged / "nested" / "link") == "../a.txt"
    assert stat.S_IMODE(os.stat(staged / "a.txt").st_mode) == 0o640
    assert os.stat(staged / "a.txt").st_mtime_ns == 1_600_000_000_123_456_789
    assert os.stat(staged / "nested").st_mtime_ns == 1_500_000_000_000_000_000

    assert set(result.snapshot) == {
        "",
        "a.txt",
        "empty",
        "nested",
        "nested/deep",
        "nested/deep/b.bin",
        "nested/link",
    }
    assert result.entries_created == 7
    assert [artifact.name for artifact in manager.list_staging_artifacts()] == [staged.name]
    stored = manager.get_move_operation(operation.task_id)
    assert stored.inodes_done == 7
    assert stored.bytes_done == 300 + 70000
    manager.close()


def test_stage_single_file(tmp_path: Path) -> None:
    manager, control, source, dest_root = build_env(tmp_path)
    single = source / "a.txt"
    operation = manager.create_move_operation(str(single), str(dest_root / "inbox"), "1001")

    result = Stager(control, manager).stage(operation)

    assert result.artifact.path.is_file()
    assert result.artifact.path.read_text(encoding="utf-8") == "alpha\n" * 50
    manager.close()


def test_unsupported_entry_removes_partial_artifact(tmp_path: Path) -> None:
    if not hasattr(os, "mkfifo"):
        pytest.skip("FIFOs not supported")
    manager, control, source, dest_root = build_env(tmp_path)
    os.mkfifo(source / "zz_pipe")
    operation = manager.create_move_operation(str(source), str(dest_root / "inbox"), "1001")

    with pytest.raises(StagingFailedError) as excinfo:
        Stager(control, manager).stage(operation)

    assert excinfo.value.code == "staging_failed"
    assert list((dest_root / ".quota_mover_staging").iterdir()) == []
    assert manager.list_staging_artifacts() == []
    manager.close()


def test_cancellation_discards_artifact(tmp_path: Path) -> None:
    manager, control, source, dest_root = build_env(tmp_path)
    operation = manager.create_move_operation(str(source), str(dest_root / "inbox"), "1001")
    token = CancelToken()
    token.cancel("test")

    with pytest.raises(OperationCancelled):
        Stager(control, manager).stage(operation, token)

    assert list((dest_root / ".quota_mover_staging").iterdir()) == []
    assert manager.list_staging_artifacts() == []
    manager.close()


def test_staging_root_must_share_placement_domain(tmp_path: Path) -> None:
    manager, _, source, dest_root = build_env(tmp_path)
    control = SplitDomainControl([BoundarySettings("1001", dest_root)])
    operation = manager.create_move_operation(str(source), str(dest_root / "inbox"), "1001")

    with pytest.raises(ConfigurationError):
        Stager(control, manager).stage(operation)

    assert manager.list_staging_artifacts() == []
    manager.close()


def test_sparse_file_stays_sparse(tmp_path: Path) -> None:
    manager, control, _, dest_root = build_env(tmp_path)
    sparse = tmp_path / "src" / "sparse.img"
    with sparse.open("wb") as handle:
        handle.seek(32 * 1024 * 1024)
        handle.write(b"tail")
    source_stat = os.stat(sparse)
    if source_stat.st_blocks * 512 >= source_stat.st_size:
        pytest.skip("filesystem does not support sparse files")
    operation = manager.create_move_operation(str(sparse), str(dest_root / "inbox"), "1001")

    result = Stager(control, manager).stage(operation)
    staged_stat = os.stat(result.artifact.path)

    assert staged_stat.st_size == source_stat.st_size
    assert staged_stat.st_blocks <= source_stat.st_blocks + 8
    with result.artifact.path.open("rb") as handle:
        handle.seek(32 * 1024 * 1024)
        assert handle.read() == b"tail"
    manager.close()
