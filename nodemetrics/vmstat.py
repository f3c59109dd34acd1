"""Fields from /proc/vmstat."""

from __future__ import annotations

import logging
import os
import re

from .metrics import Desc, Metric, ValueType, build_fq_name
from .registry import NAMESPACE, Collector, register_collector

SUBSYSTEM = "vmstat"
DEFAULT_FIELDS = "^(oom_kill|pgpg|pswp|pg.*fault).*"


class VMStatCollector(Collector):
    """Exposes the /proc/vmstat fields whose names match a pattern."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        proc_path: str = "/proc",
        fields: str = DEFAULT_FIELDS,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.proc_path = proc_path
        self.field_pattern = re.compile(fields)

    def update(self) -> list[Metric]:
        metrics: list[Metric] = []
        with open(os.path.join(self.proc_path, "vmstat"), encoding="utf-8") as stream:
            for line in stream:
                parts = line.split()
                if not parts:
                    continue
                if len(parts) < 2:
                    raise ValueError(f"invalid vmstat line: {line!r}")
                value = float(parts[1])
                name = parts[0]
                if not self.field_pattern.search(name):
                    continue
                desc = Desc(
                    build_fq_name(NAMESPACE, SUBSYSTEM, name),
                    f"/proc/vmstat information field {name}.",
                )
                metrics.append(Metric(desc, ValueType.UNTYPED, value))
        return metrics


register_collector("vmstat", True, VMStatCollector)