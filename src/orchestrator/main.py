"""
State machine driver for cross-boundary moves and crash recovery.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from boundary import BoundaryControl, build_boundary_control
from config import AppConfig
from database import DatabaseManager
from moves.committer import Committer
from moves.errors import InvalidTransition, MoveError, NotFoundError
from moves.locks import LockManager
from moves.models import ACTIVE_STATES, MoveOperation, MoveState, StagingArtifact
from moves.stager import Stager
from moves.tree import exists_no_follow
from moves.validator import Validator
from moves.verifier import Verifier
from utils import ResourceMonitor
from utils.cancellation import CancelToken


class MoveOrchestrator:
    """Drive one operation through validate, lock, stage, verify and commit.

    Every operation ends in ``completed`` or ``failed``. The only exception
    is a process crash after the commit rename, which leaves the record in
    ``committing`` for :meth:`recover` to finish.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        control: BoundaryControl,
        validator: Validator,
        stager: Stager,
        verifier: Verifier,
        committer: Committer,
        lock_manager: LockManager,
        logger: Optional[logging.Logger] = None,
        movement_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db_manager = db_manager
        self.control = control
        self.validator = validator
        self.stager = stager
        self.verifier = verifier
        self.committer = committer
        self.lock_manager = lock_manager
        self.logger = logger or logging.getLogger("quota_mover")
        self.movement_logger = movement_logger or logging.getLogger("quota_mover.movement")

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        db_manager: DatabaseManager,
        control: Optional[BoundaryControl] = None,
        loggers: Optional[Dict[str, logging.Logger]] = None,
        monitor: Optional[ResourceMonitor] = None,
    ) -> "MoveOrchestrator":
        """Wire every stage from configuration around one database connection."""
        loggers = loggers or {}
        logger = loggers.get("main") or logging.getLogger("quota_mover")
        movement_logger = loggers.get("movement") or logging.getLogger("quota_mover.movement")
        control = control or build_boundary_control(config, logger=logger)
        return cls(
            db_manager=db_manager,
            control=control,
            validator=Validator(
                control,
                capacity_margin=float(config.get("validation", "capacity_margin", default=1.10)),
                logger=logger,
            ),
            stager=Stager(
                control,
                db_manager,
                chunk_bytes=int(config.get("staging", "chunk_bytes", default=8 * 1024 * 1024)),
                progress_interval_seconds=float(
                    config.get("staging", "progress_interval_seconds", default=5)
                ),
                fsync_files=bool(config.get("staging", "fsync_files", default=True)),
                monitor=monitor,
                logger=logger,
                movement_logger=movement_logger,
            ),
            verifier=Verifier(
                block_tolerance=int(config.get("verification", "block_tolerance", default=8)),
                logger=logger,
            ),
            committer=Committer(db_manager, logger=logger, movement_logger=movement_logger),
            lock_manager=LockManager(db_manager, logger=logger),
            logger=logger,
            movement_logger=movement_logger,
        )

    def submit(self, source: Path, destination_parent: Path, boundary_id: str) -> MoveOperation:
        """Record a new pending operation."""
        operation = self.db_manager.create_move_operation(
            str(Path(source).absolute()), str(Path(destination_parent).absolute()), boundary_id
        )
        self.logger.info(
            "Move %s submitted: %s -> %s (boundary %s)",
            operation.task_id,
            operation.source_path,
            operation.destination_parent,
            boundary_id,
        )
        return operation

    def move(
        self,
        source: Path,
        destination_parent: Path,
        boundary_id: str,
        cancel: Optional[CancelToken] = None,
    ) -> MoveOperation:
        """Submit and run an operation on the calling thread."""
        operation = self.submit(source, destination_parent, boundary_id)
        return self.run(operation.task_id, cancel)

    def run(self, task_id: str, cancel: Optional[CancelToken] = None) -> MoveOperation:
        """Execute a pending operation to a terminal state and return the final record."""
        cancel = cancel or CancelToken()
        operation = self.db_manager.get_move_operation(task_id)
        if operation is None:
            raise NotFoundError("Unknown move operation", path=task_id)
        if operation.state != MoveState.PENDING:
            raise InvalidTransition(f"Operation {task_id} is {operation.state.value}, not pending")
        artifact: Optional[StagingArtifact] = None
        committed = False
        try:
            operation = self.db_manager.transition(task_id, MoveState.VALIDATING)
            admission = self.validator.validate(
                operation.source,
                Path(operation.destination_parent),
                operation.destination_boundary,
                cancel,
            )
            self.db_manager.update_progress(
                task_id,
                bytes_done=0,
                inodes_done=0,
                bytes_total=admission.usage.logical_bytes,
                inodes_total=admission.usage.entries,
            )

            self.lock_manager.acquire_many([operation.source, operation.final_destination], task_id)
            operation = self.db_manager.transition(task_id, MoveState.LOCKED)

            operation = self.db_manager.transition(task_id, MoveState.STAGING)
            staged = self.stager.stage(operation, cancel)
            artifact = staged.artifact

            operation = self.db_manager.transition(task_id, MoveState.VERIFYING)
            self.verifier.verify(operation.source, artifact.path, staged.snapshot, cancel)
            cancel.check(operation.source_path)

            operation = self.db_manager.transition(task_id, MoveState.COMMITTING)
            self.committer.install(operation, artifact)
            committed = True
            warning = self.committer.remove_source(operation)
            operation = self.db_manager.transition(task_id, MoveState.COMPLETED)
            if warning:
                self.logger.warning("Move %s completed with warning: %s", task_id, warning)
            else:
                self.logger.info("Move %s completed: %s", task_id, operation.final_destination)
        except MoveError as exc:
            self._fail(task_id, exc.code, exc.detail(), artifact, committed)
        except Exception as exc:
            self.logger.exception("Move %s failed unexpectedly", task_id)
            self._fail(task_id, "io_failure", str(exc), artifact, committed)
        finally:
            self.lock_manager.release(task_id)

        final = self.db_manager.get_move_operation(task_id)
        assert final is not None
        return final

    def recover(self) -> list[MoveOperation]:
        """Resolve every non-terminal operation from persisted state alone.

        Must only run while no worker is executing operations.
        """
        recovered: list[MoveOperation] = []
        for operation in self.db_manager.list_move_operations(states=ACTIVE_STATES):
            try:
                recovered.append(self._recover_one(operation))
            finally:
                self.lock_manager.release(operation.task_id)
        if recovered:
            self.logger.info("Recovered %s interrupted operation(s)", len(recovered))
        return recovered

    def _recover_one(self, operation: MoveOperation) -> MoveOperation:
        task_id = operation.task_id
        artifacts = self.db_manager.list_staging_artifacts(task_id)
        leftovers = [artifact for artifact in artifacts if exists_no_follow(artifact.path)]

        if (
            operation.state == MoveState.COMMITTING
            and not leftovers
            and exists_no_follow(operation.final_destination)
        ):
            # The rename landed before the crash; only source removal is outstanding.
            for artifact in artifacts:
                self.db_manager.remove_staging_artifact(artifact.name)
            warning = self.committer.remove_source(operation)
            completed = self.db_manager.transition(task_id, MoveState.COMPLETED)
            self.logger.warning(
                "Move %s completed during recovery%s",
                task_id,
                f" with warning: {warning}" if warning else "",
            )
            return completed

        for artifact in artifacts:
            self.stager.discard(artifact)
        failed = self.db_manager.transition(
            task_id,
            MoveState.FAILED,
            error_code="io_failure",
            error_detail=f"Interrupted while {operation.state.value}; resolved by recovery",
        )
        self.logger.warning("Move %s marked failed during recovery (was %s)", task_id, operation.state.value)
        return failed

    def _fail(
        self,
        task_id: str,
        code: str,
        detail: str,
        artifact: Optional[StagingArtifact],
        committed: bool,
    ) -> None:
        if committed:
            self.logger.error(
                "Move %s committed but could not be finalized (%s); run recovery", task_id, detail
            )
            self.movement_logger.error("Move %s left in committing; recovery pending (%s)", task_id, detail)
            return
        if artifact is not None:
            self.stager.discard(artifact)
        self.db_manager.transition(task_id, MoveState.FAILED, error_code=code, error_detail=detail)
        self.logger.error("Move %s failed: %s", task_id, detail)
