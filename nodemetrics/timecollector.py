"""The current system time."""

from __future__ import annotations

import logging
import time

from .metrics import Desc, Metric, ValueType
from .registry import NAMESPACE, Collector, register_collector


class TimeCollector(Collector):
    """Exposes the current system time in seconds since the epoch."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self.desc = Desc(
            NAMESPACE + "_time_seconds",
            "System time in seconds since epoch (1970).",
        )

    def update(self) -> list[Metric]:
        now = time.time_ns() / 1e9
        self.logger.debug("Return time: %s", now)
        return [Metric(self.desc, ValueType.GAUGE, now)]


register_collector("time", True, TimeCollector)