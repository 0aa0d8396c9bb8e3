"""
Boundary (quota domain) control plane bindings.
"""

from .control import BoundaryControl, Capacity, FileLayout, Membership
from .factory import build_boundary_control
from .local import LocalBoundaryControl
from .lustre import LustreBoundaryControl

__all__ = [
    "BoundaryControl",
    "Capacity",
    "FileLayout",
    "Membership",
    "LocalBoundaryControl",
    "LustreBoundaryControl",
    "build_boundary_control",
]
