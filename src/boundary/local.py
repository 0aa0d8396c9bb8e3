"""
Boundary control for plain POSIX trees: each boundary is a configured directory.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from config import BoundarySettings
from moves.errors import ConfigurationError
from moves.tree import measure_tree
from utils.residency import HSM_STATE_XATTR, is_locally_resident

from .control import BoundaryControl, Capacity, Membership


class LocalBoundaryControl(BoundaryControl):
    """Directory-tree boundaries with configured limits.

    Membership is containment under a boundary root; the inheritance flag is
    the boundary's ``inherit`` setting. Limits, when configured, are compared
    against measured usage of the root; otherwise free space comes from
    ``statvfs``/``disk_usage`` of the root.
    """

    def __init__(
        self,
        boundaries: list[BoundarySettings],
        staging_dir_name: str = ".quota_mover_staging",
        residency_xattr: str = HSM_STATE_XATTR,
    ) -> None:
        super().__init__(boundaries, staging_dir_name)
        self.residency_xattr = residency_xattr

    def membership(self, path: Path) -> Membership:
        resolved = Path(os.path.realpath(path))
        match: Optional[BoundarySettings] = None
        depth = -1
        for boundary in self.boundaries.values():
            root = Path(os.path.realpath(boundary.root))
            if (resolved == root or root in resolved.parents) and len(root.parts) > depth:
                match = boundary
                depth = len(root.parts)
        if match is None:
            return Membership(boundary_id=None, inherit=False)
        return Membership(boundary_id=match.boundary_id, inherit=match.inherit)

    def assign(self, path: Path, boundary_id: str, inherit: bool = True) -> None:
        # Containment is the membership; assigning only checks it holds.
        current = self.membership(path)
        if current.boundary_id != boundary_id:
            raise ConfigurationError(
                f"Path is not inside boundary {boundary_id}", path=str(path)
            )

    def capacity(self, boundary_id: str) -> Capacity:
        settings = self.settings(boundary_id)
        if settings.bytes_limit is None and settings.inodes_limit is None:
            return self._filesystem_capacity(settings.root)
        usage = measure_tree(settings.root)
        free_bytes = None
        free_inodes = None
        if settings.bytes_limit is not None:
            free_bytes = max(settings.bytes_limit - usage.bytes_used, 0)
        if settings.inodes_limit is not None:
            free_inodes = max(settings.inodes_limit - usage.entries, 0)
        return Capacity(free_bytes=free_bytes, free_inodes=free_inodes)

    def is_resident(self, path: Path) -> bool:
        return is_locally_resident(path, self.residency_xattr)

    def placement_domain(self, path: Path) -> str:
        return f"dev:{os.stat(path).st_dev}"

    def staging_root(self, boundary_id: str, destination_parent: Path) -> Path:
        root = self.boundary_root(boundary_id) / self.staging_dir_name
        root.mkdir(parents=True, exist_ok=True)
        return root

    def _filesystem_capacity(self, root: Path) -> Capacity:
        free_inodes = None
        statvfs = getattr(os, "statvfs", None)
        if statvfs is not None:
            stats = statvfs(root)
            free_bytes = int(stats.f_bavail) * int(stats.f_frsize)
            if stats.f_files:
                free_inodes = int(stats.f_favail)
            return Capacity(free_bytes=free_bytes, free_inodes=free_inodes)
        return Capacity(free_bytes=int(shutil.disk_usage(root).free), free_inodes=None)
