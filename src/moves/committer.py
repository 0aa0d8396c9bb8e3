"""
Atomic finalization of a verified staging artifact.

Commit is two ordered steps: the rename into place (made durable by flushing
the destination parent) and only then removal of the source. A crash between
the steps leaves two copies, never zero.
"""

from __future__ import annotations

import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from database import DatabaseManager
from moves.errors import CollisionError, CrossDomainRenameError, MoveIOError, PartialCleanupError
from moves.models import MoveOperation, StagingArtifact
from moves.tree import entry_identity, exists_no_follow, fsync_directory, remove_tree


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a commit; ``warning`` is set when cleanup was incomplete."""

    destination: Path
    source_removed: bool
    warning: Optional[str] = None


class Committer:
    """Rename the staged copy into place, then remove the source."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        logger: Optional[logging.Logger] = None,
        movement_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db_manager = db_manager
        self.logger = logger or logging.getLogger("quota_mover")
        self.movement_logger = movement_logger or logging.getLogger("quota_mover.movement")

    def commit(self, operation: MoveOperation, artifact: StagingArtifact) -> CommitResult:
        destination = operation.final_destination
        self.install(operation, artifact)
        warning = self.remove_source(operation)
        return CommitResult(destination=destination, source_removed=warning is None, warning=warning)

    def install(self, operation: MoveOperation, artifact: StagingArtifact) -> None:
        """Step 1: rename the artifact to the final destination and flush it."""
        destination = operation.final_destination
        if exists_no_follow(destination):
            raise CollisionError("Destination appeared before commit", path=str(destination))
        try:
            os.rename(artifact.path, destination)
        except OSError as exc:
            self.db_manager.record_file_operation(
                operation.task_id,
                action="commit_rename",
                source_path=str(artifact.path),
                destination_path=str(destination),
                status="failed",
                error_message=str(exc),
            )
            if exc.errno == errno.EXDEV:
                raise CrossDomainRenameError(
                    "Staging artifact and destination are in different placement domains",
                    path=str(destination),
                ) from exc
            raise MoveIOError(f"Rename into place failed: {exc.strerror or exc}", path=str(destination)) from exc
        try:
            fsync_directory(destination.parent)
        except OSError as exc:
            raise MoveIOError(
                f"Could not flush destination directory: {exc.strerror or exc}", path=str(destination.parent)
            ) from exc
        self.db_manager.remove_staging_artifact(artifact.name)
        self.db_manager.record_file_operation(
            operation.task_id,
            action="commit_rename",
            source_path=str(artifact.path),
            destination_path=str(destination),
            status="completed",
            size=operation.bytes_total,
        )
        self.movement_logger.info("Committed %s -> %s", artifact.path, destination)

    def remove_source(self, operation: MoveOperation) -> Optional[str]:
        """Step 2: delete the original. Returns a warning instead of raising.

        The source is only removed while it is still the entry recorded when
        staging began; anything that has taken its place is left alone.
        """
        source = operation.source
        try:
            if exists_no_follow(source):
                if operation.source_identity and entry_identity(source) != operation.source_identity:
                    return self._skip_replaced_source(operation)
                remove_tree(source)
            fsync_directory(source.parent)
        except OSError as exc:
            failure = PartialCleanupError(
                f"Move committed but source removal failed: {exc.strerror or exc}", path=str(source)
            )
            warning = failure.detail()
            self.db_manager.set_cleanup_pending(operation.task_id, True, warning=warning)
            self._remember_leftover(operation)
            self.db_manager.record_file_operation(
                operation.task_id,
                action="remove_source",
                source_path=str(source),
                destination_path=None,
                status="failed",
                error_message=str(exc),
            )
            self.logger.warning("%s (%s)", warning, operation.task_id)
            return warning
        if operation.cleanup_pending:
            self.db_manager.set_cleanup_pending(operation.task_id, False)
        self.db_manager.record_file_operation(
            operation.task_id,
            action="remove_source",
            source_path=str(source),
            destination_path=None,
            status="completed",
        )
        self.movement_logger.info("Removed source %s", source)
        return None

    def _skip_replaced_source(self, operation: MoveOperation) -> str:
        source = operation.source
        warning = PartialCleanupError(
            "Source path now holds a different entry; left in place", path=str(source)
        ).detail()
        self.db_manager.set_cleanup_pending(operation.task_id, False, warning=warning)
        self.db_manager.record_file_operation(
            operation.task_id,
            action="remove_source",
            source_path=str(source),
            destination_path=None,
            status="skipped",
            error_message=warning,
        )
        self.logger.error("%s (%s)", warning, operation.task_id)
        self.movement_logger.error("Skipped removal of replaced source %s (%s)", source, operation.task_id)
        return warning

    def _remember_leftover(self, operation: MoveOperation) -> None:
        # A partial removal changes the source directory, so the retry must match what is left now.
        try:
            identity = entry_identity(operation.source)
        except FileNotFoundError:
            return
        except OSError as exc:
            self.logger.warning("Could not record leftover source %s: %s", operation.source, exc)
            return
        self.db_manager.set_source_identity(operation.task_id, identity)
