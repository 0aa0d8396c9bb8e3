"""Move stages, state model and errors."""

from .errors import (
    BlockedContentError,
    CapacityExceededError,
    CollisionError,
    ConfigurationError,
    CrossDomainRenameError,
    InvalidTransition,
    LockConflictError,
    MoveError,
    MoveIOError,
    NotFoundError,
    OperationCancelled,
    PartialCleanupError,
    SourceMutatedError,
    StagingFailedError,
    VerificationError,
)
from .models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    FileRecord,
    LockRecord,
    MoveOperation,
    MoveState,
    StagingArtifact,
    TreeUsage,
    can_transition,
)

__all__ = [
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "BlockedContentError",
    "CapacityExceededError",
    "CollisionError",
    "ConfigurationError",
    "CrossDomainRenameError",
    "FileRecord",
    "InvalidTransition",
    "LockConflictError",
    "LockRecord",
    "MoveError",
    "MoveIOError",
    "MoveOperation",
    "MoveState",
    "NotFoundError",
    "OperationCancelled",
    "PartialCleanupError",
    "SourceMutatedError",
    "StagingArtifact",
    "StagingFailedError",
    "TreeUsage",
    "VerificationError",
    "can_transition",
]
