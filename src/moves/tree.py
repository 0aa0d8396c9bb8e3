"""
Tree walking and durability helpers shared by the move stages.
"""

from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Iterator, Optional

from moves.models import FileRecord, TreeUsage
from utils.cancellation import CancelToken

BLOCK_UNIT = 512


def iter_tree(root: Path, cancel: Optional[CancelToken] = None) -> Iterator[tuple[str, Path, os.stat_result]]:
    """Yield ``(relative_path, path, lstat)`` top-down, root first, without following links.

    The root itself is reported with an empty relative path. Children are
    visited in name order so two trees can be compared in lock-step.
    """
    root_stat = os.lstat(root)
    if cancel is not None:
        cancel.check(str(root))
    yield "", root, root_stat
    if not stat.S_ISDIR(root_stat.st_mode):
        return
    pending = [("", root)]
    while pending:
        relative_dir, directory = pending.pop()
        with os.scandir(directory) as entries:
            children = sorted(entries, key=lambda entry: entry.name)
        subdirs = []
        for entry in children:
            if cancel is not None:
                cancel.check(entry.path)
            relative = f"{relative_dir}/{entry.name}" if relative_dir else entry.name
            entry_stat = entry.stat(follow_symlinks=False)
            yield relative, Path(entry.path), entry_stat
            if stat.S_ISDIR(entry_stat.st_mode):
                subdirs.append((relative, Path(entry.path)))
        pending.extend(reversed(subdirs))


def kind_of(mode: int) -> str:
    if stat.S_ISLNK(mode):
        return "symlink"
    if stat.S_ISDIR(mode):
        return "dir"
    if stat.S_ISREG(mode):
        return "file"
    return "other"


def build_record(relative: str, path: Path, entry_stat: os.stat_result) -> FileRecord:
    """Create a FileRecord from an lstat result."""
    kind = kind_of(entry_stat.st_mode)
    return FileRecord(
        relative_path=relative,
        kind=kind,
        size=int(entry_stat.st_size) if kind == "file" else 0,
        blocks=int(getattr(entry_stat, "st_blocks", 0)),
        mtime_ns=int(entry_stat.st_mtime_ns),
        link_target=os.readlink(path) if kind == "symlink" else None,
    )


def snapshot_tree(root: Path, cancel: Optional[CancelToken] = None) -> dict[str, FileRecord]:
    """Record per-entry metadata for a tree keyed by relative path."""
    return {
        relative: build_record(relative, path, entry_stat)
        for relative, path, entry_stat in iter_tree(root, cancel)
    }


def measure_tree(root: Path, cancel: Optional[CancelToken] = None) -> TreeUsage:
    """Measure allocated bytes, logical bytes and entry count of a tree."""
    usage = TreeUsage()
    for _, _, entry_stat in iter_tree(root, cancel):
        usage.entries += 1
        blocks = getattr(entry_stat, "st_blocks", None)
        if blocks is None:
            usage.bytes_used += int(entry_stat.st_size)
        else:
            usage.bytes_used += int(blocks) * BLOCK_UNIT
        if stat.S_ISREG(entry_stat.st_mode):
            usage.logical_bytes += int(entry_stat.st_size)
    return usage


def fsync_directory(path: Path) -> None:
    """Flush a directory's metadata (entries, renames) to stable storage."""
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def remove_tree(path: Path) -> None:
    """Remove a file, symlink or directory tree without following links."""
    entry_stat = os.lstat(path)
    if stat.S_ISDIR(entry_stat.st_mode):
        shutil.rmtree(path)
    else:
        path.unlink()


def exists_no_follow(path: Path) -> bool:
    try:
        os.lstat(path)
    except FileNotFoundError:
        return False
    return True


def make_writable(root: Path) -> None:
    """Restore owner permissions on a directory tree so it can be removed."""
    if root.is_symlink() or not root.is_dir():
        return
    os.chmod(root, stat.S_IMODE(os.lstat(root).st_mode) | stat.S_IRWXU)
    for dirpath, dirnames, _ in os.walk(root):
        for name in dirnames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                os.chmod(child, stat.S_IMODE(os.lstat(child).st_mode) | stat.S_IRWXU)


def entry_identity(path: Path) -> str:
    """Return a token that changes when ``path`` is replaced or touched."""
    entry_stat = os.lstat(path)
    return f"{entry_stat.st_dev}:{entry_stat.st_ino}:{entry_stat.st_mtime_ns}"
