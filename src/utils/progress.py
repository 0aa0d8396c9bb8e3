"""
Periodic progress snapshots of move operations for the performance log.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from database import DatabaseManager
from moves.models import ACTIVE_STATES, MoveOperation


@dataclass
class ProgressSnapshot:
    """Summary of current move activity."""

    timestamp: str
    state_summary: dict[str, int]
    locks_held: int
    staging_artifacts: int
    active: list[MoveOperation]


class ProgressReporter:
    """Emit periodic progress summaries using a background thread."""

    def __init__(
        self,
        db_paths: dict,
        logger: Optional[logging.Logger] = None,
        interval_seconds: int = 30,
        enabled: bool = True,
    ) -> None:
        self.db_paths = db_paths
        self.logger = logger or logging.getLogger("quota_mover.performance")
        self.interval_seconds = max(interval_seconds, 5)
        self.enabled = enabled
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start background reporting if enabled."""
        if not self.enabled or self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="progress-reporter", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop background reporting."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self.interval_seconds + 5)
        self._thread = None

    def snapshot(self) -> ProgressSnapshot:
        db_manager = DatabaseManager(self.db_paths)
        try:
            state_summary = db_manager.move_state_summary()
            locks_held = len(db_manager.list_locks())
            staging_artifacts = len(db_manager.list_staging_artifacts())
            active = db_manager.list_move_operations(states=ACTIVE_STATES)
        finally:
            db_manager.close()
        return ProgressSnapshot(
            timestamp=datetime.utcnow().isoformat(),
            state_summary=state_summary,
            locks_held=locks_held,
            staging_artifacts=staging_artifacts,
            active=active,
        )

    def log_snapshot(self, snapshot: ProgressSnapshot) -> None:
        summary = ", ".join(
            f"{state}:{count}" for state, count in sorted(snapshot.state_summary.items())
        )
        self.logger.info(
            "Dashboard %s | locks=%s staging=%s operations={%s}",
            snapshot.timestamp,
            snapshot.locks_held,
            snapshot.staging_artifacts,
            summary,
        )
        for operation in snapshot.active:
            self.logger.info(
                "  %s %s bytes=%s/%s inodes=%s/%s",
                operation.task_id,
                operation.state.value,
                operation.bytes_done,
                operation.bytes_total,
                operation.inodes_done,
                operation.inodes_total,
            )

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.log_snapshot(self.snapshot())
            except Exception:
                self.logger.exception("Progress snapshot failed")
