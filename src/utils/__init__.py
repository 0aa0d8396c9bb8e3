"""
Utility helpers for the cross-boundary move orchestrator.
"""

from .logging_setup import setup_logging
from .progress import ProgressReporter
from .residency import is_cloud_placeholder, is_hsm_released, is_locally_resident
from .resource_monitor import ResourceMonitor

__all__ = [
    "setup_logging",
    "ResourceMonitor",
    "ProgressReporter",
    "is_cloud_placeholder",
    "is_hsm_released",
    "is_locally_resident",
]
