"""
Path locks shared by all workers through the task state store.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from database import DatabaseManager
from moves.errors import LockConflictError


def lock_key(path: Path) -> str:
    """Normalize a path so equivalent spellings share one lock."""
    parent = os.path.realpath(path.parent)
    return os.path.normcase(os.path.join(parent, path.name))


class LockManager:
    """Acquire and release per-path locks with atomic check-and-set.

    Locks never expire on their own. A lock whose owner died is released by
    crash recovery; the Janitor only reads lock presence.
    """

    def __init__(self, db_manager: DatabaseManager, logger: Optional[logging.Logger] = None) -> None:
        self.db_manager = db_manager
        self.logger = logger or logging.getLogger("quota_mover")

    def acquire(self, path: Path, task_id: str) -> None:
        self.acquire_many([path], task_id)

    def acquire_many(self, paths: Iterable[Path], task_id: str) -> None:
        """Lock every path or none of them; raise LockConflictError on contention."""
        keys = list(dict.fromkeys(lock_key(path) for path in paths))
        conflict = self.db_manager.try_insert_locks(keys, task_id)
        if conflict is not None:
            holder = self.db_manager.get_lock(conflict)
            owner = holder.task_id if holder else "unknown"
            raise LockConflictError(f"Path is locked by operation {owner}", path=conflict)
        self.logger.debug("Locks acquired by %s: %s", task_id, keys)

    def release(self, task_id: str) -> int:
        """Release every lock held by a task. Safe to call repeatedly."""
        released = self.db_manager.delete_locks(task_id)
        if released:
            self.logger.debug("Released %s lock(s) held by %s", released, task_id)
        return released

    def held_by(self, task_id: str) -> bool:
        return bool(self.db_manager.list_locks(task_id))

    def is_locked(self, path: Path) -> bool:
        return self.db_manager.get_lock(lock_key(path)) is not None
