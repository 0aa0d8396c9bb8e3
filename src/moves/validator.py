"""
Pre-flight admission control for cross-boundary moves.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from pathlib import Path
from typing import Optional

from boundary import BoundaryControl
from moves.errors import (
    BlockedContentError,
    CapacityExceededError,
    CollisionError,
    ConfigurationError,
    NotFoundError,
)
from moves.models import TreeUsage
from moves.tree import exists_no_follow, iter_tree, measure_tree
from utils.cancellation import CancelToken

DEFAULT_CAPACITY_MARGIN = 1.10


@dataclass(frozen=True)
class Admission:
    """Result of a successful validation."""

    source: Path
    final_destination: Path
    usage: TreeUsage
    required_bytes: int
    required_inodes: int


class Validator:
    """Check a move request before any lock is taken or byte copied.

    Checks run in a fixed order and the first failure is raised: source
    existence, nesting of the destination inside the source, destination
    collision, capacity with margin, destination boundary configuration
    (including a source that would swallow the staging area), then
    residency of every source entry.
    """

    def __init__(
        self,
        control: BoundaryControl,
        capacity_margin: float = DEFAULT_CAPACITY_MARGIN,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if capacity_margin < 1:
            raise ValueError("capacity_margin must be >= 1.0")
        self.control = control
        self.capacity_margin = Decimal(str(capacity_margin))
        self.logger = logger or logging.getLogger("quota_mover")

    def required_capacity(self, usage: int) -> int:
        """Return ``usage`` scaled by the safety margin, rounded up."""
        scaled = Decimal(usage) * self.capacity_margin
        return int(scaled.to_integral_value(rounding=ROUND_CEILING))

    def validate(
        self,
        source: Path,
        destination_parent: Path,
        boundary_id: str,
        cancel: Optional[CancelToken] = None,
    ) -> Admission:
        if not exists_no_follow(source):
            raise NotFoundError("Source does not exist", path=str(source))
        if not destination_parent.is_dir():
            raise NotFoundError("Destination parent does not exist", path=str(destination_parent))
        if _contains(_resolved_entry(source), os.path.realpath(destination_parent)):
            raise ConfigurationError(
                "Destination parent is the source or lies inside it", path=str(destination_parent)
            )

        final_destination = destination_parent / source.name
        if exists_no_follow(final_destination):
            raise CollisionError("Destination already exists", path=str(final_destination))

        usage = measure_tree(source, cancel)
        required_bytes = self.required_capacity(usage.bytes_used)
        required_inodes = self.required_capacity(usage.entries)
        capacity = self.control.capacity(boundary_id)
        if capacity.free_bytes is not None and required_bytes > capacity.free_bytes:
            raise CapacityExceededError(
                f"Boundary {boundary_id} has {capacity.free_bytes} bytes free, "
                f"{required_bytes} required",
                path=str(source),
            )
        if capacity.free_inodes is not None and required_inodes > capacity.free_inodes:
            raise CapacityExceededError(
                f"Boundary {boundary_id} has {capacity.free_inodes} inodes free, "
                f"{required_inodes} required",
                path=str(source),
            )

        membership = self.control.membership(destination_parent)
        if membership.boundary_id != boundary_id:
            raise ConfigurationError(
                f"Destination parent belongs to boundary {membership.boundary_id}, "
                f"not {boundary_id}",
                path=str(destination_parent),
            )
        if not membership.inherit:
            raise ConfigurationError(
                "Destination parent does not pass its boundary to new children",
                path=str(destination_parent),
            )
        staging_base = self.control.boundary_root(boundary_id) / self.control.staging_dir_name
        if _contains(_resolved_entry(source), os.path.realpath(staging_base)):
            raise ConfigurationError("Source contains the boundary staging area", path=str(source))

        for _, path, _ in iter_tree(source, cancel):
            if not self.control.is_resident(path):
                raise BlockedContentError("Source entry is not locally resident", path=str(path))

        self.logger.info(
            "Admitted %s -> %s (boundary %s, %s bytes, %s entries)",
            source,
            final_destination,
            boundary_id,
            usage.bytes_used,
            usage.entries,
        )
        return Admission(
            source=source,
            final_destination=final_destination,
            usage=usage,
            required_bytes=required_bytes,
            required_inodes=required_inodes,
        )


def _resolved_entry(path: Path) -> str:
    # The entry itself is moved, so a symlinked source is not followed.
    return os.path.join(os.path.realpath(path.parent), path.name)


def _contains(ancestor: str, path: str) -> bool:
    return os.path.commonpath([ancestor, path]) == ancestor
