"""
Data model and lifecycle state machine for move operations.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class MoveState(str, Enum):
    """Lifecycle states of a MoveOperation."""

    PENDING = "pending"
    VALIDATING = "validating"
    LOCKED = "locked"
    STAGING = "staging"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({MoveState.COMPLETED, MoveState.FAILED})
ACTIVE_STATES = frozenset(set(MoveState) - TERMINAL_STATES)

_FORWARD = {
    MoveState.PENDING: MoveState.VALIDATING,
    MoveState.VALIDATING: MoveState.LOCKED,
    MoveState.LOCKED: MoveState.STAGING,
    MoveState.STAGING: MoveState.VERIFYING,
    MoveState.VERIFYING: MoveState.COMMITTING,
    MoveState.COMMITTING: MoveState.COMPLETED,
}


def can_transition(current: MoveState, target: MoveState) -> bool:
    """Return True if ``current -> target`` is a legal lifecycle step."""
    if current.terminal:
        return False
    if target == MoveState.FAILED:
        return True
    return _FORWARD.get(current) == target


@dataclass(frozen=True)
class MoveOperation:
    """Persisted unit of work for one cross-boundary move."""

    task_id: str
    source_path: str
    destination_parent: str
    destination_boundary: str
    state: MoveState
    bytes_total: int = 0
    bytes_done: int = 0
    inodes_total: int = 0
    inodes_done: int = 0
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    warning: Optional[str] = None
    cleanup_pending: bool = False
    created_at: str = ""
    updated_at: str = ""
    source_identity: Optional[str] = None

    @property
    def source(self) -> Path:
        return Path(self.source_path)

    @property
    def final_destination(self) -> Path:
        return Path(self.destination_parent) / self.source.name


@dataclass(frozen=True)
class StagingArtifact:
    """Temporary shadow copy living inside the destination placement domain."""

    name: str
    parent: Path
    task_id: str
    created_at: str

    @property
    def path(self) -> Path:
        return self.parent / self.name


@dataclass(frozen=True)
class FileRecord:
    """Per-entry metadata snapshot used for verification."""

    relative_path: str
    kind: str
    size: int
    blocks: int
    mtime_ns: int
    link_target: Optional[str] = None


@dataclass(frozen=True)
class LockRecord:
    """Mutual-exclusion record keyed by path."""

    path: str
    task_id: str
    acquired_at: str


@dataclass
class TreeUsage:
    """Aggregate usage of a tree as the quota accounting sees it."""

    bytes_used: int = 0
    logical_bytes: int = 0
    entries: int = 0
