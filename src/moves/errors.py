"""
Error taxonomy for cross-boundary move operations.

Every failure that ends a move carries a stable ``code`` that is persisted
with the operation record so pollers can tell rejection reasons apart.
"""

from __future__ import annotations

from typing import Optional


class MoveError(Exception):
    """Base class for failures surfaced by a move stage."""

    code = "move_error"

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def detail(self) -> str:
        if self.path and self.path not in self.message:
            return f"{self.message} ({self.path})"
        return self.message


class NotFoundError(MoveError):
    """Source (or destination parent) does not exist."""

    code = "not_found"


class CollisionError(MoveError):
    """An entry with the same name already exists under the destination."""

    code = "collision"


class CapacityExceededError(MoveError):
    """The destination boundary cannot absorb the source with margin."""

    code = "capacity_exceeded"


class ConfigurationError(MoveError):
    """Destination boundary membership, inheritance or placement is wrong."""

    code = "configuration_error"


class BlockedContentError(MoveError):
    """Source holds content that is not locally resident."""

    code = "blocked_content"


class LockConflictError(MoveError):
    """Another operation already holds the lock for a path."""

    code = "conflict"


class SourceMutatedError(MoveError):
    """Source changed after staging started."""

    code = "source_mutated"


class VerificationError(MoveError):
    """Staged copy does not match the source."""

    code = "verification_failed"


class MoveIOError(MoveError):
    """Generic I/O failure while staging or committing."""

    code = "io_failure"


class StagingFailedError(MoveIOError):
    code = "staging_failed"


class CrossDomainRenameError(MoveIOError):
    """The filesystem refused an atomic rename across placement domains."""

    code = "cross_domain_rename"


class OperationCancelled(MoveError):
    code = "cancelled"


class PartialCleanupError(MoveError):
    """Commit succeeded but source removal or staging reclamation did not."""

    code = "partial_cleanup_failure"


class InvalidTransition(RuntimeError):
    """Raised when an operation is pushed to a state it cannot reach."""
