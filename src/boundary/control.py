"""
Capability interface over the filesystem's boundary (quota domain) control plane.

The move stages never call filesystem-specific tools directly. Everything they
need from the filesystem beyond plain POSIX I/O goes through a
``BoundaryControl`` implementation.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import BoundarySettings
from moves.errors import ConfigurationError


@dataclass(frozen=True)
class Membership:
    """Boundary membership of an entry and whether new children inherit it."""

    boundary_id: Optional[str]
    inherit: bool


@dataclass(frozen=True)
class Capacity:
    """Free capacity of a boundary; ``None`` means unlimited."""

    free_bytes: Optional[int]
    free_inodes: Optional[int]


@dataclass(frozen=True)
class FileLayout:
    """Physical placement of a regular file (striping)."""

    stripe_count: int
    stripe_size: int
    pool: Optional[str] = None


class BoundaryControl(ABC):
    """Query and set boundary membership, capacity, placement and residency."""

    def __init__(self, boundaries: list[BoundarySettings], staging_dir_name: str = ".quota_mover_staging") -> None:
        self.boundaries = {boundary.boundary_id: boundary for boundary in boundaries}
        self.staging_dir_name = staging_dir_name

    def settings(self, boundary_id: str) -> BoundarySettings:
        try:
            return self.boundaries[boundary_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown destination boundary: {boundary_id}") from exc

    def boundary_root(self, boundary_id: str) -> Path:
        return self.settings(boundary_id).root

    def boundary_ids(self) -> list[str]:
        return list(self.boundaries)

    @abstractmethod
    def membership(self, path: Path) -> Membership:
        """Return which boundary ``path`` belongs to and its inheritance flag."""

    @abstractmethod
    def assign(self, path: Path, boundary_id: str, inherit: bool = True) -> None:
        """Put ``path`` into ``boundary_id``; directories may carry the inherit flag."""

    @abstractmethod
    def capacity(self, boundary_id: str) -> Capacity:
        """Return free bytes and free inodes for a boundary."""

    @abstractmethod
    def is_resident(self, path: Path) -> bool:
        """Return False if opening ``path`` may block on a remote/offline tier."""

    @abstractmethod
    def placement_domain(self, path: Path) -> str:
        """Return an identifier of the domain inside which rename is atomic."""

    @abstractmethod
    def staging_root(self, boundary_id: str, destination_parent: Path) -> Path:
        """Return (creating if needed) a staging directory in the destination's domain."""

    def staging_roots(self, boundary_id: str) -> list[Path]:
        """Return every staging directory that may hold artifacts for a boundary."""
        base = self.boundary_root(boundary_id) / self.staging_dir_name
        if not base.is_dir():
            return []
        return [base]

    def get_layout(self, path: Path) -> Optional[FileLayout]:
        """Return the file's layout, or None if the filesystem has no such notion."""
        return None

    def create_file(self, path: Path, layout: Optional[FileLayout], mode: int = 0o600) -> int:
        """Create an empty regular file with ``layout`` and return a writable fd."""
        return os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), mode)
