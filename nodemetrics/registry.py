"""Registry of collectors and the node collector that runs them."""

from __future__ import annotations

import abc
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .metrics import Desc, Metric, ValueType

NAMESPACE = "node"

_log = logging.getLogger(__name__)

_scrape_duration_desc = Desc(
    "node_scrape_collector_duration_seconds",
    "node_exporter: Duration of a collector scrape.",
    ("collector",),
)
_scrape_success_desc = Desc(
    "node_scrape_collector_success",
    "node_exporter: Whether a collector succeeded.",
    ("collector",),
)


class NoDataError(Exception):
    """Raised by a collector that has nothing to report on this system."""


class Collector(abc.ABC):
    """A source of metrics."""

    @abc.abstractmethod
    def update(self) -> Iterable[Metric]:
        """Return the metrics gathered for one scrape."""


Factory = Callable[[logging.Logger], Collector]


@dataclass
class _Entry:
    factory: Factory
    enabled: bool


_collectors: dict[str, _Entry] = {}


def register_collector(name: str, default_enabled: bool, factory: Factory) -> None:
    """Make a collector available under the given name."""
    if name in _collectors:
        raise ValueError(f"collector {name!r} is already registered")
    _collectors[name] = _Entry(factory, bool(default_enabled))


def set_collector_enabled(name: str, enabled: bool) -> None:
    """Enable or disable a registered collector."""
    if name not in _collectors:
        raise KeyError(f"missing collector: {name}")
    _collectors[name].enabled = bool(enabled)


def disable_default_collectors() -> None:
    """Set every registered collector to disabled."""
    for entry in _collectors.values():
        entry.enabled = False


def available_collectors() -> dict[str, bool]:
    """Registered collector names, sorted, with their enabled state."""
    return {name: _collectors[name].enabled for name in sorted(_collectors)}


class NodeCollector:
    """Runs the enabled (or the requested) collectors and gathers their metrics."""

    def __init__(self, filters: Sequence[str] = (), logger: logging.Logger | None = None):
        self.logger = logger or _log
        for name in filters:
            if name not in _collectors:
                raise ValueError(f"missing collector: {name}")
            if not _collectors[name].enabled:
                raise ValueError(f"disabled collector: {name}")
        wanted = set(filters)
        self.collectors: dict[str, Collector] = {}
        for name in sorted(_collectors):
            entry = _collectors[name]
            if (wanted and name in wanted) or (not wanted and entry.enabled):
                self.collectors[name] = entry.factory(self.logger)

    def _run(self, name: str, collector: Collector) -> list[Metric]:
        begin = time.monotonic()
        metrics: list[Metric] = []
        try:
            metrics = list(collector.update())
            success = 1.0
        except NoDataError as exc:
            self.logger.debug("collector returned no data: %s: %s", name, exc)
            success = 0.0
        except Exception as exc:  # a failing collector must not break the scrape
            self.logger.error("collector failed: %s: %s", name, exc)
            metrics = []
            success = 0.0
        duration = time.monotonic() - begin
        metrics.append(Metric(_scrape_duration_desc, ValueType.GAUGE, duration, (name,)))
        metrics.append(Metric(_scrape_success_desc, ValueType.GAUGE, success, (name,)))
        return metrics

    def collect(self) -> list[Metric]:
        """Run all collectors in parallel and return their metrics."""
        if not self.collectors:
            return []
        with ThreadPoolExecutor(max_workers=len(self.collectors)) as pool:
            results = pool.map(lambda item: self._run(*item), self.collectors.items())
            return [metric for batch in results for metric in batch]