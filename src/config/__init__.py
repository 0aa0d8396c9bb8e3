"""
Configuration package for the cross-boundary move orchestrator.
"""

from .settings import AppConfig, BoundarySettings, ensure_directories

__all__ = ["AppConfig", "BoundarySettings", "ensure_directories"]
