"""
Detect entries whose content is not locally resident (recall required).
"""

from __future__ import annotations

import os
from pathlib import Path


# Windows file attribute flags
FILE_ATTRIBUTE_REPARSE_POINT = 0x00000400
FILE_ATTRIBUTE_OFFLINE = 0x00001000
FILE_ATTRIBUTE_RECALL_ON_OPEN = 0x00040000
FILE_ATTRIBUTE_RECALL_ON_DATA_ACCESS = 0x00400000

# Extended attribute set by HSM copytools on released files.
HSM_STATE_XATTR = "user.hsm_state"
RELEASED_STATES = {b"released", b"offline"}


def is_cloud_placeholder(path: Path) -> bool:
    """Return True if a path looks like a cloud placeholder (Windows only)."""
    if os.name != "nt":
        return False
    try:
        stat = path.stat()
    except OSError:
        return False
    attrs = getattr(stat, "st_file_attributes", 0)
    if attrs & FILE_ATTRIBUTE_RECALL_ON_DATA_ACCESS:
        return True
    if attrs & FILE_ATTRIBUTE_RECALL_ON_OPEN:
        return True
    if (attrs & FILE_ATTRIBUTE_OFFLINE) and (attrs & FILE_ATTRIBUTE_REPARSE_POINT):
        return True
    return False


def is_hsm_released(path: Path, xattr_name: str = HSM_STATE_XATTR) -> bool:
    """Return True if an HSM state xattr marks the file as released."""
    getxattr = getattr(os, "getxattr", None)
    if getxattr is None:
        return False
    try:
        value = getxattr(path, xattr_name, follow_symlinks=False)
    except OSError:
        return False
    return value.strip().lower() in RELEASED_STATES


def is_locally_resident(path: Path, xattr_name: str = HSM_STATE_XATTR) -> bool:
    """Return False when reading the entry could block on a slow tier."""
    if path.is_symlink():
        return True
    return not (is_cloud_placeholder(path) or is_hsm_released(path, xattr_name))
