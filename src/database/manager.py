"""
SQLite access layer for move operations, path locks and staging artifacts.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

from moves.errors import InvalidTransition
from moves.models import LockRecord, MoveOperation, MoveState, StagingArtifact, can_transition

from .schema import create_databases

_OPERATION_COLUMNS = """
    task_id, source_path, destination_parent, destination_boundary, state,
    bytes_total, bytes_done, inodes_total, inodes_done, error_code, error_detail,
    warning, cleanup_pending, created_at, updated_at, source_identity
"""


class DatabaseManager:
    """Manage the state database connection and task state store queries."""

    def __init__(self, db_paths: Dict[str, Path], busy_timeout_seconds: float = 30.0) -> None:
        self.db_paths = db_paths
        self.busy_timeout_seconds = busy_timeout_seconds
        self._state_conn: Optional[sqlite3.Connection] = None

    def initialize(self) -> None:
        """Create database files and tables."""
        create_databases(self.db_paths)

    def connect(self) -> None:
        """Open the database connection if it is not already open."""
        if self._state_conn is None:
            self._state_conn = sqlite3.connect(
                self.db_paths["state"],
                timeout=self.busy_timeout_seconds,
                check_same_thread=False,
            )
            self._state_conn.execute("PRAGMA journal_mode=WAL;")

    def close(self) -> None:
        """Close the open database connection."""
        if self._state_conn is not None:
            self._state_conn.close()
            self._state_conn = None

    def create_move_operation(
        self, source_path: str, destination_parent: str, destination_boundary: str
    ) -> MoveOperation:
        """Insert a new operation in the pending state and return it."""
        self.connect()
        task_id = uuid.uuid4().hex
        now = datetime.utcnow().isoformat()
        self._state_conn.execute(
            """
            INSERT INTO move_operations (
                task_id, source_path, destination_parent, destination_boundary, state,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                source_path,
                destination_parent,
                destination_boundary,
                MoveState.PENDING.value,
                now,
                now,
            ),
        )
        self._state_conn.commit()
        operation = self.get_move_operation(task_id)
        assert operation is not None
        return operation

    def get_move_operation(self, task_id: str) -> Optional[MoveOperation]:
        """Fetch a move operation by task ID."""
        self.connect()
        row = self._state_conn.execute(
            f"SELECT {_OPERATION_COLUMNS} FROM move_operations WHERE task_id = ?",
            (task_id,),
        ).fetchone()
        return _operation_from_row(row) if row else None

    def transition(
        self,
        task_id: str,
        target: MoveState,
        error_code: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> MoveOperation:
        """Move an operation to ``target``, enforcing the lifecycle order."""
        self.connect()
        current = self.get_move_operation(task_id)
        if current is None:
            raise KeyError(f"Unknown move operation: {task_id}")
        if not can_transition(current.state, target):
            raise InvalidTransition(
                f"Illegal transition for {task_id}: {current.state.value} -> {target.value}"
            )
        cursor = self._state_conn.execute(
            """
            UPDATE move_operations
            SET state = ?, error_code = COALESCE(?, error_code),
                error_detail = COALESCE(?, error_detail), updated_at = ?
            WHERE task_id = ? AND state = ?
            """,
            (
                target.value,
                error_code,
                error_detail,
                datetime.utcnow().isoformat(),
                task_id,
                current.state.value,
            ),
        )
        self._state_conn.commit()
        if cursor.rowcount != 1:
            raise InvalidTransition(f"State of {task_id} changed concurrently")
        updated = self.get_move_operation(task_id)
        assert updated is not None
        return updated

    def update_progress(
        self,
        task_id: str,
        bytes_done: Optional[int] = None,
        inodes_done: Optional[int] = None,
        bytes_total: Optional[int] = None,
        inodes_total: Optional[int] = None,
    ) -> None:
        """Update byte/inode progress counters for an operation."""
        self.connect()
        self._state_conn.execute(
            """
            UPDATE move_operations
            SET bytes_done = COALESCE(?, bytes_done),
                inodes_done = COALESCE(?, inodes_done),
                bytes_total = COALESCE(?, bytes_total),
                inodes_total = COALESCE(?, inodes_total),
                updated_at = ?
            WHERE task_id = ?
            """,
            (bytes_done, inodes_done, bytes_total, inodes_total, datetime.utcnow().isoformat(), task_id),
        )
        self._state_conn.commit()

    def set_cleanup_pending(self, task_id: str, pending: bool, warning: Optional[str] = None) -> None:
        """Flag or clear incomplete post-commit cleanup for an operation."""
        self.connect()
        self._state_conn.execute(
            """
            UPDATE move_operations
            SET cleanup_pending = ?, warning = COALESCE(?, warning), updated_at = ?
            WHERE task_id = ?
            """,
            (1 if pending else 0, warning, datetime.utcnow().isoformat(), task_id),
        )
        self._state_conn.commit()

    def set_source_identity(self, task_id: str, identity: str) -> None:
        """Remember which on-disk entry the operation is moving."""
        self.connect()
        self._state_conn.execute(
            "UPDATE move_operations SET source_identity = ?, updated_at = ? WHERE task_id = ?",
            (identity, datetime.utcnow().isoformat(), task_id),
        )
        self._state_conn.commit()

    def list_move_operations(
        self, states: Optional[Iterable[MoveState]] = None, limit: Optional[int] = None
    ) -> list[MoveOperation]:
        """List operations, optionally filtered by state, oldest first."""
        self.connect()
        query = f"SELECT {_OPERATION_COLUMNS} FROM move_operations"
        params: list = []
        state_values = [state.value for state in states] if states is not None else None
        if state_values is not None:
            if not state_values:
                return []
            query += f" WHERE state IN ({','.join('?' for _ in state_values)})"
            params.extend(state_values)
        query += " ORDER BY created_at ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._state_conn.execute(query, tuple(params))
        return [_operation_from_row(row) for row in cursor.fetchall()]

    def list_cleanup_pending(self) -> list[MoveOperation]:
        """Return completed operations whose source removal is outstanding."""
        self.connect()
        cursor = self._state_conn.execute(
            f"""
            SELECT {_OPERATION_COLUMNS} FROM move_operations
            WHERE cleanup_pending = 1 AND state = ?
            ORDER BY updated_at ASC
            """,
            (MoveState.COMPLETED.value,),
        )
        return [_operation_from_row(row) for row in cursor.fetchall()]

    def move_state_summary(self) -> dict[str, int]:
        """Return counts of operations grouped by state."""
        self.connect()
        cursor = self._state_conn.execute(
            "SELECT state, COUNT(*) FROM move_operations GROUP BY state"
        )
        return {str(row[0]): int(row[1]) for row in cursor.fetchall()}

    def try_insert_locks(self, paths: list[str], task_id: str) -> Optional[str]:
        """Insert lock rows for all paths or none; return the conflicting path if any."""
        self.connect()
        now = datetime.utcnow().isoformat()
        for path in paths:
            try:
                self._state_conn.execute(
                    "INSERT INTO locks (path, task_id, acquired_at) VALUES (?, ?, ?)",
                    (path, task_id, now),
                )
            except sqlite3.IntegrityError:
                self._state_conn.rollback()
                return path
        self._state_conn.commit()
        return None

    def delete_locks(self, task_id: str) -> int:
        """Delete every lock held by a task and return the number removed."""
        self.connect()
        cursor = self._state_conn.execute("DELETE FROM locks WHERE task_id = ?", (task_id,))
        self._state_conn.commit()
        return int(cursor.rowcount)

    def get_lock(self, path: str) -> Optional[LockRecord]:
        """Return the lock covering an exact path, if any."""
        self.connect()
        row = self._state_conn.execute(
            "SELECT path, task_id, acquired_at FROM locks WHERE path = ?",
            (path,),
        ).fetchone()
        if row is None:
            return None
        return LockRecord(path=str(row[0]), task_id=str(row[1]), acquired_at=str(row[2] or ""))

    def list_locks(self, task_id: Optional[str] = None) -> list[LockRecord]:
        """List active locks, optionally for one task."""
        self.connect()
        query = "SELECT path, task_id, acquired_at FROM locks"
        params: tuple = ()
        if task_id is not None:
            query += " WHERE task_id = ?"
            params = (task_id,)
        cursor = self._state_conn.execute(query + " ORDER BY acquired_at ASC", params)
        return [
            LockRecord(path=str(row[0]), task_id=str(row[1]), acquired_at=str(row[2] or ""))
            for row in cursor.fetchall()
        ]

    def register_staging_artifact(self, artifact: StagingArtifact) -> None:
        """Record a staging artifact before it is created on disk."""
        self.connect()
        self._state_conn.execute(
            "INSERT INTO staging_artifacts (name, parent, task_id, created_at) VALUES (?, ?, ?, ?)",
            (artifact.name, str(artifact.parent), artifact.task_id, artifact.created_at),
        )
        self._state_conn.commit()

    def remove_staging_artifact(self, name: str) -> None:
        """Forget a staging artifact once it has been renamed away or deleted."""
        self.connect()
        self._state_conn.execute("DELETE FROM staging_artifacts WHERE name = ?", (name,))
        self._state_conn.commit()

    def get_staging_artifact(self, name: str) -> Optional[StagingArtifact]:
        self.connect()
        row = self._state_conn.execute(
            "SELECT name, parent, task_id, created_at FROM staging_artifacts WHERE name = ?",
            (name,),
        ).fetchone()
        return _artifact_from_row(row) if row else None

    def list_staging_artifacts(self, task_id: Optional[str] = None) -> list[StagingArtifact]:
        """List registered staging artifacts, optionally for one task."""
        self.connect()
        query = "SELECT name, parent, task_id, created_at FROM staging_artifacts"
        params: tuple = ()
        if task_id is not None:
            query += " WHERE task_id = ?"
            params = (task_id,)
        cursor = self._state_conn.execute(query + " ORDER BY created_at ASC", params)
        return [_artifact_from_row(row) for row in cursor.fetchall()]

    def record_file_operation(
        self,
        task_id: str,
        action: str,
        source_path: str,
        destination_path: Optional[str],
        status: str,
        size: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a filesystem mutation for audit."""
        self.connect()
        self._state_conn.execute(
            """
            INSERT INTO file_operations (
                task_id,
                action,
                source_path,
                destination_path,
                status,
                size,
                created_at,
                error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                action,
                source_path,
                destination_path,
                status,
                size,
                datetime.utcnow().isoformat(),
                error_message,
            ),
        )
        self._state_conn.commit()

    def list_file_operations(
        self, task_id: Optional[str] = None, status: Optional[str] = None, limit: Optional[int] = None
    ) -> list[dict]:
        """List audited file operations, newest first."""
        self.connect()
        query = """
            SELECT id, task_id, action, source_path, destination_path, status, size, created_at,
                   error_message
            FROM file_operations
        """
        params: list = []
        clauses: list[str] = []
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._state_conn.execute(query, tuple(params))
        return [
            {
                "id": int(row[0]),
                "task_id": str(row[1]) if row[1] else "",
                "action": str(row[2]) if row[2] else "",
                "source_path": str(row[3]) if row[3] else "",
                "destination_path": str(row[4]) if row[4] else "",
                "status": str(row[5]) if row[5] else "",
                "size": int(row[6]) if row[6] is not None else None,
                "created_at": str(row[7]) if row[7] else "",
                "error_message": str(row[8]) if row[8] else "",
            }
            for row in cursor.fetchall()
        ]


def _operation_from_row(row: tuple) -> MoveOperation:
    return MoveOperation(
        task_id=str(row[0]),
        source_path=str(row[1]),
        destination_parent=str(row[2]),
        destination_boundary=str(row[3]),
        state=MoveState(str(row[4])),
        bytes_total=int(row[5]) if row[5] is not None else 0,
        bytes_done=int(row[6]) if row[6] is not None else 0,
        inodes_total=int(row[7]) if row[7] is not None else 0,
        inodes_done=int(row[8]) if row[8] is not None else 0,
        error_code=str(row[9]) if row[9] else None,
        error_detail=str(row[10]) if row[10] else None,
        warning=str(row[11]) if row[11] else None,
        cleanup_pending=bool(row[12]),
        created_at=str(row[13]) if row[13] else "",
        updated_at=str(row[14]) if row[14] else "",
        source_identity=str(row[15]) if row[15] else None,
    )


def _artifact_from_row(row: tuple) -> StagingArtifact:
    return StagingArtifact(
        name=str(row[0]),
        parent=Path(str(row[1])),
        task_id=str(row[2]),
        created_at=str(row[3]) if row[3] else "",
    )
