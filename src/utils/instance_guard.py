"""
Single-instance guard for long-running daemons such as the janitor.
"""

from __future__ import annotations

import os
import socket
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO


class InstanceLockError(RuntimeError):
    """Raised when another process already holds the lock file."""


class InstanceLock:
    """Advisory lock on a file, held for as long as the handle stays open."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: Optional[TextIO] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> "InstanceLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            _try_lock(handle)
        except OSError as exc:
            handle.close()
            owner = self.path.read_text(encoding="utf-8").strip() or "unknown owner"
            raise InstanceLockError(f"{self.path} is held ({owner})") from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()} host={socket.gethostname()} since={datetime.utcnow().isoformat()}")
        handle.flush()
        self._handle = handle
        return self

    def release(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "InstanceLock":
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()


def _try_lock(handle: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def acquire_instance_lock(lock_path: Path) -> InstanceLock:
    """Acquire a non-blocking instance lock or raise InstanceLockError."""
    return InstanceLock(lock_path).acquire()
