"""
Build the configured boundary control backend.
"""

from __future__ import annotations

import logging
from typing import Optional

from config import AppConfig

from .control import BoundaryControl
from .local import LocalBoundaryControl
from .lustre import LustreBoundaryControl


def build_boundary_control(config: AppConfig, logger: Optional[logging.Logger] = None) -> BoundaryControl:
    """Instantiate the ``boundary_control.backend`` named in configuration."""
    backend = str(config.get("boundary_control", "backend", default="local")).lower()
    staging_dir_name = str(config.get("staging", "dir_name", default=".quota_mover_staging"))
    boundaries = config.boundaries()
    if backend == "local":
        return LocalBoundaryControl(
            boundaries,
            staging_dir_name=staging_dir_name,
            residency_xattr=str(
                config.get("boundary_control", "residency_xattr", default="user.hsm_state")
            ),
        )
    if backend == "lustre":
        return LustreBoundaryControl(
            boundaries,
            mount=config.resolve_path("boundary_control", "mount"),
            staging_dir_name=staging_dir_name,
            lfs_binary=str(config.get("boundary_control", "lfs_binary", default="lfs")),
            command_timeout_seconds=float(
                config.get("boundary_control", "command_timeout_seconds", default=60)
            ),
            logger=logger,
        )
    raise ValueError(f"Unknown boundary_control.backend: {backend}")
