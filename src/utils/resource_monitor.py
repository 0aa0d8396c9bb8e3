"""
Host load throttling for copy-heavy stages.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import psutil

from config import AppConfig


@dataclass
class ResourceMonitor:
    """Pause staging between files while host CPU or RAM is above its ceiling.

    A ceiling of 0 disables that check. Each pause is capped by
    ``max_throttle_seconds`` so a busy host slows a move down without
    stalling it.
    """

    max_cpu_percent: float
    max_ram_percent: float
    sleep_seconds: float = 0.5
    max_throttle_seconds: float = 15.0
    min_check_interval_seconds: float = 0.5
    logger: Optional[logging.Logger] = None
    throttled_seconds: float = field(default=0.0, init=False)
    _last_check: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        # Prime the counter; the first non-blocking sample is always 0.0.
        psutil.cpu_percent(interval=None)

    @classmethod
    def from_config(cls, config: AppConfig, logger: Optional[logging.Logger] = None) -> Optional["ResourceMonitor"]:
        """Build a monitor from ``resource_limits``, or None when both ceilings are off."""
        max_cpu = float(config.get("resource_limits", "max_cpu_percent", default=0))
        max_ram = float(config.get("resource_limits", "max_ram_percent", default=0))
        if max_cpu <= 0 and max_ram <= 0:
            return None
        return cls(
            max_cpu_percent=max_cpu,
            max_ram_percent=max_ram,
            max_throttle_seconds=float(config.get("resource_limits", "max_throttle_seconds", default=15)),
            min_check_interval_seconds=float(
                config.get("resource_limits", "min_check_interval_seconds", default=0.5)
            ),
            logger=logger,
        )

    def overloaded(self) -> bool:
        cpu = psutil.cpu_percent(interval=0.1) if self.max_cpu_percent > 0 else 0.0
        ram = psutil.virtual_memory().percent if self.max_ram_percent > 0 else 0.0
        return (self.max_cpu_percent > 0 and cpu > self.max_cpu_percent) or (
            self.max_ram_percent > 0 and ram > self.max_ram_percent
        )

    def throttle(self) -> float:
        """Sleep while the host is overloaded; return the seconds spent waiting."""
        now = time.monotonic()
        if now - self._last_check < self.min_check_interval_seconds:
            return 0.0
        self._last_check = now
        waited = 0.0
        while waited < self.max_throttle_seconds and self.overloaded():
            time.sleep(self.sleep_seconds)
            waited += self.sleep_seconds
        if waited and self.logger is not None:
            self.logger.debug("Throttled staging for %.1fs (host load above limits)", waited)
        self.throttled_seconds += waited
        return waited
