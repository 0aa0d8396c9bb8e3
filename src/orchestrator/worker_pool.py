"""
Worker pool that runs move operations concurrently.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional

from boundary import BoundaryControl
from config import AppConfig
from database import DatabaseManager
from moves.models import MoveOperation
from orchestrator.main import MoveOrchestrator
from utils import ResourceMonitor
from utils.cancellation import CancelToken


class MoveWorkerPool:
    """Run each submitted operation on its own worker thread.

    Workers share nothing but the state database: each opens its own
    connection, and path contention is settled by the lock table, so a
    conflicting request fails immediately instead of waiting.
    """

    def __init__(
        self,
        config: AppConfig,
        control: BoundaryControl,
        loggers: Optional[Dict[str, logging.Logger]] = None,
        monitor: Optional[ResourceMonitor] = None,
        max_workers: Optional[int] = None,
        time_limit_seconds: Optional[float] = None,
    ) -> None:
        self.config = config
        self.control = control
        self.loggers = loggers or {}
        self.logger = self.loggers.get("main") or logging.getLogger("quota_mover")
        self.monitor = monitor
        self.db_paths = config.db_paths()
        self.busy_timeout_seconds = float(config.get("database", "busy_timeout_seconds", default=30))
        if max_workers is None:
            max_workers = int(config.get("workers", "max_workers", default=4))
        if time_limit_seconds is None:
            time_limit_seconds = float(config.get("workers", "time_limit_seconds", default=0))
        self.time_limit_seconds = time_limit_seconds
        self._executor = ThreadPoolExecutor(max_workers=max(max_workers, 1), thread_name_prefix="move-worker")
        self._futures: dict[str, Future] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._guard = threading.Lock()

    def __enter__(self) -> "MoveWorkerPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)

    def submit(self, source: Path, destination_parent: Path, boundary_id: str) -> str:
        """Record a pending operation, schedule it and return its task id."""
        db_manager = self._open_db()
        try:
            orchestrator = self._orchestrator(db_manager)
            operation = orchestrator.submit(source, destination_parent, boundary_id)
        finally:
            db_manager.close()
        token = CancelToken()
        with self._guard:
            self._tokens[operation.task_id] = token
            self._futures[operation.task_id] = self._executor.submit(self._work, operation.task_id, token)
        return operation.task_id

    def cancel(self, task_id: str) -> bool:
        """Request cancellation; returns False if the task is unknown."""
        with self._guard:
            token = self._tokens.get(task_id)
        if token is None:
            return False
        token.cancel("cancelled by request")
        return True

    def wait(self, task_id: str, timeout: Optional[float] = None) -> MoveOperation:
        """Block until the operation reaches a terminal state.

        A finished task is forgotten once waited on, so each task id can be
        collected exactly once.
        """
        with self._guard:
            future = self._futures[task_id]
        try:
            return future.result(timeout=timeout)
        finally:
            if future.done():
                with self._guard:
                    self._futures.pop(task_id, None)

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            with self._guard:
                tokens = list(self._tokens.values())
            for token in tokens:
                token.cancel("worker pool shutting down")
        self._executor.shutdown(wait=wait)

    def _work(self, task_id: str, token: CancelToken) -> MoveOperation:
        db_manager = self._open_db()
        if self.time_limit_seconds and self.time_limit_seconds > 0:
            token.cancel_after(self.time_limit_seconds)
        try:
            return self._orchestrator(db_manager).run(task_id, token)
        except Exception:
            self.logger.exception("Worker crashed while running %s", task_id)
            raise
        finally:
            token.disarm()
            db_manager.close()
            with self._guard:
                self._tokens.pop(task_id, None)

    def _orchestrator(self, db_manager: DatabaseManager) -> MoveOrchestrator:
        return MoveOrchestrator.from_config(
            self.config,
            db_manager,
            control=self.control,
            loggers=self.loggers,
            monitor=self.monitor,
        )

    def _open_db(self) -> DatabaseManager:
        return DatabaseManager(self.db_paths, busy_timeout_seconds=self.busy_timeout_seconds)
