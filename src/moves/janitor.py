"""
Background reclamation of orphaned staging artifacts and unfinished source cleanup.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from boundary import BoundaryControl
from database import DatabaseManager
from moves.committer import Committer
from moves.locks import LockManager
from moves.models import ACTIVE_STATES, StagingArtifact
from moves.tree import exists_no_follow, make_writable, remove_tree

DEFAULT_STALENESS_SECONDS = 6 * 60 * 60
DEFAULT_INTERVAL_SECONDS = 300

_ARTIFACT_NAME_RE = re.compile(r"^(?P<task_id>[0-9a-f]{32})\.[0-9a-f]+$")


@dataclass
class JanitorStats:
    """Summary of one janitor pass."""

    scanned: int = 0
    reclaimed: int = 0
    skipped_fresh: int = 0
    skipped_live: int = 0
    registry_pruned: int = 0
    sources_cleaned: int = 0
    errors: int = 0


class Janitor:
    """Delete stale staging artifacts whose owner is no longer alive.

    An artifact is reclaimed only when it is older than the staleness
    threshold and its owning operation neither holds a lock nor sits in an
    active state. Long transfers therefore survive however old they get.
    """

    def __init__(
        self,
        control: BoundaryControl,
        db_paths: Dict[str, Path],
        staleness_seconds: float = DEFAULT_STALENESS_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        busy_timeout_seconds: float = 30.0,
        logger: Optional[logging.Logger] = None,
        movement_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.control = control
        self.db_paths = db_paths
        self.staleness_seconds = staleness_seconds
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self.busy_timeout_seconds = busy_timeout_seconds
        self.logger = logger or logging.getLogger("quota_mover")
        self.movement_logger = movement_logger or logging.getLogger("quota_mover.movement")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start periodic passes on a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="staging-janitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self.interval_seconds + 5)
        self._thread = None

    def run_once(self, now: Optional[datetime] = None) -> JanitorStats:
        """Run a single reclamation pass."""
        now = now or datetime.utcnow()
        stats = JanitorStats()
        db_manager = DatabaseManager(self.db_paths, busy_timeout_seconds=self.busy_timeout_seconds)
        try:
            registered = {artifact.name: artifact for artifact in db_manager.list_staging_artifacts()}
            seen: set[str] = set()
            for boundary_id in self.control.boundary_ids():
                for staging_root in self.control.staging_roots(boundary_id):
                    for entry in sorted(staging_root.iterdir()):
                        seen.add(entry.name)
                        stats.scanned += 1
                        self._inspect(db_manager, entry, registered.get(entry.name), now, stats)
            for name, artifact in registered.items():
                if name in seen or exists_no_follow(artifact.path):
                    continue
                if self._owner_alive(db_manager, artifact.task_id):
                    continue
                db_manager.remove_staging_artifact(name)
                stats.registry_pruned += 1
            self._finish_source_cleanup(db_manager, stats)
        finally:
            db_manager.close()
        if stats.reclaimed or stats.sources_cleaned or stats.errors:
            self.logger.info(
                "Janitor pass: scanned=%s reclaimed=%s live=%s fresh=%s sources_cleaned=%s errors=%s",
                stats.scanned,
                stats.reclaimed,
                stats.skipped_live,
                stats.skipped_fresh,
                stats.sources_cleaned,
                stats.errors,
            )
        return stats

    def _inspect(
        self,
        db_manager: DatabaseManager,
        entry: Path,
        artifact: Optional[StagingArtifact],
        now: datetime,
        stats: JanitorStats,
    ) -> None:
        task_id = artifact.task_id if artifact else _owner_from_name(entry.name)
        age = self._age_seconds(entry, artifact, now)
        if age < self.staleness_seconds:
            stats.skipped_fresh += 1
            return
        if task_id and self._owner_alive(db_manager, task_id):
            stats.skipped_live += 1
            return
        try:
            make_writable(entry)
            remove_tree(entry)
        except OSError as exc:
            stats.errors += 1
            self.logger.error("Janitor could not reclaim %s: %s", entry, exc)
            return
        db_manager.remove_staging_artifact(entry.name)
        stats.reclaimed += 1
        self.movement_logger.info(
            "Reclaimed stale staging artifact %s (owner %s, age %.0fs)", entry, task_id or "unknown", age
        )

    def _finish_source_cleanup(self, db_manager: DatabaseManager, stats: JanitorStats) -> None:
        """Retry source removal for committed moves that could not delete their source."""
        committer = Committer(db_manager, logger=self.logger, movement_logger=self.movement_logger)
        lock_manager = LockManager(db_manager, logger=self.logger)
        for operation in db_manager.list_cleanup_pending():
            if lock_manager.is_locked(operation.source):
                continue
            if not exists_no_follow(operation.final_destination):
                stats.errors += 1
                self.logger.error(
                    "Committed destination missing for %s; leaving source %s in place",
                    operation.task_id,
                    operation.source_path,
                )
                continue
            if committer.remove_source(operation) is None:
                stats.sources_cleaned += 1
            else:
                stats.errors += 1

    def _owner_alive(self, db_manager: DatabaseManager, task_id: str) -> bool:
        if db_manager.list_locks(task_id):
            return True
        operation = db_manager.get_move_operation(task_id)
        return operation is not None and operation.state in ACTIVE_STATES

    def _age_seconds(self, entry: Path, artifact: Optional[StagingArtifact], now: datetime) -> float:
        if artifact is not None and artifact.created_at:
            try:
                return (now - datetime.fromisoformat(artifact.created_at)).total_seconds()
            except ValueError:
                pass
        mtime = datetime.utcfromtimestamp(entry.lstat().st_mtime)
        return (now - mtime).total_seconds()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                self.logger.exception("Janitor pass failed")


def _owner_from_name(name: str) -> Optional[str]:
    match = _ARTIFACT_NAME_RE.match(name)
    return match.group("task_id") if match else None
