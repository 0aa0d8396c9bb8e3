"""
Cooperative cancellation for long-running move stages.
"""

from __future__ import annotations

import threading
from typing import Optional

from moves.errors import OperationCancelled


class CancelToken:
    """Flag checked by stages at entry boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._timer: Optional[threading.Timer] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, path: Optional[str] = None) -> None:
        """Raise OperationCancelled if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self._reason}", path=path)

    def cancel_after(self, seconds: float) -> None:
        """Arm a time limit that cancels the token when it fires."""
        if seconds <= 0:
            return
        self.disarm()
        self._timer = threading.Timer(seconds, self.cancel, args=(f"time limit {seconds:.0f}s exceeded",))
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
