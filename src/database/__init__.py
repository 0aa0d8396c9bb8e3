"""
Database package for the move task state store.
"""

from .manager import DatabaseManager
from .schema import create_databases

__all__ = ["DatabaseManager", "create_databases"]
