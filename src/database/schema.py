"""
Database schema definitions for the move task state store.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict


def create_databases(db_paths: Dict[str, Path]) -> None:
    """Create all SQLite databases and their tables."""
    create_state_db(db_paths["state"])


def create_state_db(db_path: Path) -> None:
    """Create the state database for move operations, locks and staging artifacts."""
    conn = _connect(db_path)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS move_operations (
            task_id TEXT PRIMARY KEY,
            source_path TEXT NOT NULL,
            destination_parent TEXT NOT NULL,
            destination_boundary TEXT NOT NULL,
            state TEXT NOT NULL,
            bytes_total INTEGER DEFAULT 0,
            bytes_done INTEGER DEFAULT 0,
            inodes_total INTEGER DEFAULT 0,
            inodes_done INTEGER DEFAULT 0,
            error_code TEXT,
            error_detail TEXT,
            warning TEXT,
            cleanup_pending BOOLEAN DEFAULT 0,
            created_at TIMESTAMP,
            updated_at TIMESTAMP,
            source_identity TEXT
        )
        """
    )
    _ensure_column(conn, "move_operations", "warning", "TEXT")
    _ensure_column(conn, "move_operations", "cleanup_pending", "BOOLEAN DEFAULT 0")
    _ensure_column(conn, "move_operations", "source_identity", "TEXT")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS locks (
            path TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            acquired_at TIMESTAMP
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS staging_artifacts (
            name TEXT PRIMARY KEY,
            parent TEXT NOT NULL,
            task_id TEXT NOT NULL,
            created_at TIMESTAMP
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS file_operations (
            id INTEGER PRIMARY KEY,
            task_id TEXT,
            action TEXT,
            source_path TEXT,
            destination_path TEXT,
            status TEXT,
            size INTEGER,
            created_at TIMESTAMP,
            error_message TEXT
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_move_operations_state ON move_operations(state)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_locks_task ON locks(task_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_staging_artifacts_task ON staging_artifacts(task_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_file_operations_task ON file_operations(task_id)")
    conn.commit()
    conn.close()


def _connect(db_path: Path) -> sqlite3.Connection:
    """Create a SQLite connection with WAL enabled."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    """Ensure a column exists on a SQLite table."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in cursor.fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
