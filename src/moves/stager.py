"""
Build a shadow copy of the source inside the destination's placement domain.
"""

from __future__ import annotations

import errno
import logging
import os
import stat
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from boundary import BoundaryControl
from database import DatabaseManager
from moves.errors import ConfigurationError, MoveError, OperationCancelled, StagingFailedError
from moves.models import FileRecord, MoveOperation, StagingArtifact
from moves.tree import (
    entry_identity,
    exists_no_follow,
    fsync_directory,
    iter_tree,
    kind_of,
    make_writable,
    remove_tree,
    snapshot_tree,
)
from utils import ResourceMonitor
from utils.cancellation import CancelToken

DEFAULT_CHUNK_BYTES = 8 * 1024 * 1024


@dataclass
class StagingResult:
    """Staged artifact plus the source snapshot taken when staging began."""

    artifact: StagingArtifact
    snapshot: dict[str, FileRecord]
    bytes_copied: int
    entries_created: int


class Stager:
    """Copy a source tree into a registered staging artifact.

    The artifact lives under a staging root that must share the destination
    parent's placement domain, so the commit can be one local rename. On any
    failure the partial artifact is removed before the error propagates.
    """

    def __init__(
        self,
        control: BoundaryControl,
        db_manager: DatabaseManager,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        progress_interval_seconds: float = 5.0,
        fsync_files: bool = True,
        monitor: Optional[ResourceMonitor] = None,
        logger: Optional[logging.Logger] = None,
        movement_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.control = control
        self.db_manager = db_manager
        self.chunk_bytes = max(int(chunk_bytes), 4096)
        self.progress_interval_seconds = progress_interval_seconds
        self.fsync_files = fsync_files
        self.monitor = monitor
        self.logger = logger or logging.getLogger("quota_mover")
        self.movement_logger = movement_logger or logging.getLogger("quota_mover.movement")

    def stage(self, operation: MoveOperation, cancel: Optional[CancelToken] = None) -> StagingResult:
        """Stage ``operation``'s source and return the artifact and snapshot."""
        destination_parent = Path(operation.destination_parent)
        boundary_id = operation.destination_boundary
        try:
            staging_parent = self.control.staging_root(boundary_id, destination_parent)
            staging_domain = self.control.placement_domain(staging_parent)
            destination_domain = self.control.placement_domain(destination_parent)
        except OSError as exc:
            raise StagingFailedError(f"Cannot prepare staging root: {exc}", path=str(destination_parent)) from exc
        if staging_domain != destination_domain:
            raise ConfigurationError(
                f"Staging root {staging_parent} is in {staging_domain}, destination in {destination_domain}",
                path=str(destination_parent),
            )

        artifact = StagingArtifact(
            name=f"{operation.task_id}.{uuid.uuid4().hex[:12]}",
            parent=staging_parent,
            task_id=operation.task_id,
            created_at=datetime.utcnow().isoformat(),
        )
        self.db_manager.register_staging_artifact(artifact)
        self.logger.info("Staging %s into %s", operation.source_path, artifact.path)

        try:
            identity = entry_identity(operation.source)
            snapshot = snapshot_tree(operation.source, cancel)
            self.db_manager.set_source_identity(operation.task_id, identity)
            bytes_copied, entries_created = self._copy_tree(operation, artifact, cancel)
            fsync_directory(staging_parent)
        except OperationCancelled:
            self.logger.warning("Staging cancelled for %s; discarding %s", operation.task_id, artifact.path)
            self.discard(artifact)
            raise
        except MoveError:
            self.discard(artifact)
            raise
        except OSError as exc:
            self.logger.error("Staging failed for %s: %s", operation.task_id, exc)
            self.discard(artifact)
            raise StagingFailedError(
                f"Staging failed: {exc.strerror or exc}", path=exc.filename or operation.source_path
            ) from exc

        self.logger.info(
            "Staged %s (%s entries, %s bytes) at %s",
            operation.source_path,
            entries_created,
            bytes_copied,
            artifact.path,
        )
        return StagingResult(
            artifact=artifact,
            snapshot=snapshot,
            bytes_copied=bytes_copied,
            entries_created=entries_created,
        )

    def discard(self, artifact: StagingArtifact) -> bool:
        """Delete an artifact and forget it. Returns False if removal failed."""
        try:
            if exists_no_follow(artifact.path):
                make_writable(artifact.path)
                remove_tree(artifact.path)
        except OSError as exc:
            self.logger.error("Could not discard staging artifact %s: %s", artifact.path, exc)
            return False
        self.db_manager.remove_staging_artifact(artifact.name)
        self.movement_logger.info("Staging artifact discarded: %s", artifact.path)
        return True

    def _copy_tree(
        self, operation: MoveOperation, artifact: StagingArtifact, cancel: Optional[CancelToken]
    ) -> tuple[int, int]:
        boundary_id = operation.destination_boundary
        directories: list[tuple[Path, os.stat_result]] = []
        bytes_copied = 0
        entries = 0
        last_progress = time.monotonic()

        for relative, path, entry_stat in iter_tree(operation.source, cancel):
            target = artifact.path / relative if relative else artifact.path
            kind = kind_of(entry_stat.st_mode)
            if kind == "dir":
                os.mkdir(target, 0o700)
                directories.append((target, entry_stat))
            elif kind == "file":
                if self.monitor is not None:
                    self.monitor.throttle()
                bytes_copied += self._copy_file(path, target, entry_stat, cancel)
            elif kind == "symlink":
                os.symlink(os.readlink(path), target)
                _apply_times(target, entry_stat)
            else:
                raise StagingFailedError(f"Unsupported entry type for {path}", path=str(path))

            if not relative:
                # First created component carries boundary membership for everything below.
                self.control.assign(target, boundary_id, inherit=kind == "dir")
            entries += 1

            if (time.monotonic() - last_progress) >= self.progress_interval_seconds:
                self.db_manager.update_progress(
                    operation.task_id, bytes_done=bytes_copied, inodes_done=entries
                )
                last_progress = time.monotonic()

        # Deepest first, so finishing a child does not disturb its parent's mtime.
        for directory, entry_stat in reversed(directories):
            if self.fsync_files:
                fsync_directory(directory)
            os.chmod(directory, stat.S_IMODE(entry_stat.st_mode))
            _apply_times(directory, entry_stat)

        self.db_manager.update_progress(operation.task_id, bytes_done=bytes_copied, inodes_done=entries)
        return bytes_copied, entries

    def _copy_file(
        self, source: Path, target: Path, entry_stat: os.stat_result, cancel: Optional[CancelToken]
    ) -> int:
        layout = self.control.get_layout(source)
        dst_fd = self.control.create_file(target, layout, 0o600)
        try:
            src_fd = os.open(source, os.O_RDONLY | getattr(os, "O_BINARY", 0))
            try:
                copy_file_data(src_fd, dst_fd, entry_stat.st_size, self.chunk_bytes, cancel, str(source))
            finally:
                os.close(src_fd)
            if self.fsync_files:
                os.fsync(dst_fd)
        finally:
            os.close(dst_fd)
        os.chmod(target, stat.S_IMODE(entry_stat.st_mode))
        _apply_times(target, entry_stat)
        return int(entry_stat.st_size)


def copy_file_data(
    src_fd: int,
    dst_fd: int,
    size: int,
    chunk_bytes: int,
    cancel: Optional[CancelToken] = None,
    label: str = "",
) -> int:
    """Copy ``size`` bytes, skipping holes where the filesystem reports them.

    Returns the number of data bytes actually copied. The destination is
    truncated to ``size`` so trailing holes keep the logical length.
    """
    copied = 0
    if size > 0:
        extents = _data_extents(src_fd, size)
        if extents is None:
            extents = [(0, size)]
        for start, end in extents:
            copied += _copy_range(src_fd, dst_fd, start, end, chunk_bytes, cancel, label)
    os.ftruncate(dst_fd, size)
    return copied


def _data_extents(fd: int, size: int) -> Optional[list[tuple[int, int]]]:
    """Return ``(start, end)`` data ranges, or None if holes cannot be queried."""
    seek_data = getattr(os, "SEEK_DATA", None)
    seek_hole = getattr(os, "SEEK_HOLE", None)
    if seek_data is None or seek_hole is None:
        return None
    extents: list[tuple[int, int]] = []
    offset = 0
    while offset < size:
        try:
            start = os.lseek(fd, offset, seek_data)
        except OSError as exc:
            if exc.errno == errno.ENXIO:
                break
            if exc.errno in (errno.EINVAL, errno.EOPNOTSUPP) and not extents:
                return None
            raise
        end = min(os.lseek(fd, start, seek_hole), size)
        if end > start:
            extents.append((start, end))
        offset = end if end > start else start + 1
    return extents


def _copy_range(
    src_fd: int,
    dst_fd: int,
    start: int,
    end: int,
    chunk_bytes: int,
    cancel: Optional[CancelToken],
    label: str,
) -> int:
    os.lseek(src_fd, start, os.SEEK_SET)
    os.lseek(dst_fd, start, os.SEEK_SET)
    offset = start
    while offset < end:
        if cancel is not None:
            cancel.check(label)
        chunk = os.read(src_fd, min(chunk_bytes, end - offset))
        if not chunk:
            break
        view = memoryview(chunk)
        while view:
            written = os.write(dst_fd, view)
            view = view[written:]
        offset += len(chunk)
    return offset - start


def _apply_times(path: Path, entry_stat: os.stat_result) -> None:
    if path.is_symlink():
        if os.utime in os.supports_follow_symlinks:
            os.utime(path, ns=(entry_stat.st_atime_ns, entry_stat.st_mtime_ns), follow_symlinks=False)
        return
    os.utime(path, ns=(entry_stat.st_atime_ns, entry_stat.st_mtime_ns))
