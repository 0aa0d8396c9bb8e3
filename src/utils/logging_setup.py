"""
Logging configuration for the cross-boundary move orchestrator.

Three channels are configured: the main ``quota_mover`` logger (console,
master file and error file), ``quota_mover.performance`` for progress
snapshots and ``quota_mover.movement`` for every rename, deletion and
reclamation of user data. The two child channels write only to their own
files.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

BASE_LOGGER = "quota_mover"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"

_CHANNELS = {
    "performance": "performance_log",
    "movement": "movement_log",
}


def _file_handler(path: Path, formatter: logging.Formatter, level: Optional[int] = None) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(formatter)
    if level is not None:
        handler.setLevel(level)
    return handler


def setup_logging(log_dir: Path, level: int = logging.INFO, console: bool = True) -> Dict[str, logging.Logger]:
    """Configure the logging channels once and return them keyed by role."""
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.utcnow().strftime("%Y%m%d")
    formatter = logging.Formatter(LOG_FORMAT)

    main_logger = logging.getLogger(BASE_LOGGER)
    if not main_logger.handlers:
        main_logger.setLevel(level)
        if console:
            stream = logging.StreamHandler()
            stream.setFormatter(formatter)
            main_logger.addHandler(stream)
        main_logger.addHandler(_file_handler(log_dir / f"master_log_{stamp}.log", formatter))
        main_logger.addHandler(
            _file_handler(log_dir / f"error_log_{stamp}.log", formatter, level=logging.ERROR)
        )

    loggers: Dict[str, logging.Logger] = {"main": main_logger}
    for role, prefix in _CHANNELS.items():
        channel = logging.getLogger(f"{BASE_LOGGER}.{role}")
        if not channel.handlers:
            channel.setLevel(logging.INFO)
            channel.addHandler(_file_handler(log_dir / f"{prefix}_{stamp}.log", formatter))
            channel.propagate = False
        loggers[role] = channel
    return loggers
