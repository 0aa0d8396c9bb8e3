"""
Move orchestration: the per-operation state machine and the worker pool.
"""

from .main import MoveOrchestrator
from .worker_pool import MoveWorkerPool

__all__ = ["MoveOrchestrator", "MoveWorkerPool"]
