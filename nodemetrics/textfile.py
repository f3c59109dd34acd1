"""Metrics read from *.prom files in a directory."""

from __future__ import annotations

import logging
import os
from typing import Iterable, Mapping

from .metrics import Desc, Metric, MetricFamily, ValueType, parse_text
from .registry import Collector, register_collector

_log = logging.getLogger(__name__)

_settings = {"directory": ""}

MTIME_DESC = Desc(
    "node_textfile_mtime_seconds",
    "Unixtime mtime of textfiles successfully read.",
    ("file",),
)
SCRAPE_ERROR_DESC = Desc(
    "node_textfile_scrape_error",
    "1 if there was an error opening or reading a file, 0 otherwise",
)


def set_textfile_directory(directory: str) -> None:
    """Set the directory that newly created textfile collectors read from."""
    _settings["directory"] = directory


def convert_metric_family(family: MetricFamily) -> list[Metric]:
    """Turn a parsed family into constant metrics.

    Every metric gets the union of the family's label names; labels a sample
    lacks are given an empty value.
    """
    all_names: list[str] = []
    for sample in family.samples:
        for name in sample.labels:
            if name not in all_names:
                all_names.append(name)

    help_text = family.help or ""
    metrics: list[Metric] = []
    for sample in family.samples:
        if sample.timestamp_ms is not None:
            _log.warning(
                "Ignoring unsupported custom timestamp on textfile collector metric %s",
                family.name,
            )
        names = list(sample.labels)
        values = list(sample.labels.values())
        for name in all_names:
            if name not in sample.labels:
                names.append(name)
                values.append("")
        desc = Desc(family.name, help_text, tuple(names))

        if family.type is ValueType.SUMMARY:
            metrics.append(
                Metric(
                    desc,
                    ValueType.SUMMARY,
                    label_values=tuple(values),
                    sample_count=sample.count,
                    sample_sum=sample.sum,
                    quantiles=dict(sample.quantiles),
                )
            )
        elif family.type is ValueType.HISTOGRAM:
            metrics.append(
                Metric(
                    desc,
                    ValueType.HISTOGRAM,
                    label_values=tuple(values),
                    sample_count=sample.count,
                    sample_sum=sample.sum,
                    buckets=dict(sample.buckets),
                )
            )
        else:
            value = sample.value if sample.value is not None else 0.0
            metrics.append(Metric(desc, family.type, value, tuple(values)))
    return metrics


def has_timestamps(families: Mapping[str, MetricFamily] | Iterable[MetricFamily]) -> bool:
    """True when any sample carries a client-side timestamp."""
    values = families.values() if isinstance(families, Mapping) else families
    return any(
        sample.timestamp_ms is not None for family in values for sample in family.samples
    )


class TextFileCollector(Collector):
    """Exposes the metrics of every *.prom file in a directory."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        path: str = "",
        mtime: float | None = None,
    ):
        self.logger = logger or _log
        self.path = path
        # Fixed mtime value, used to get predictable output.
        self.mtime = mtime

    def process_file(self, name: str) -> tuple[list[Metric], float]:
        """Parse one file; return its metrics and its mtime in whole seconds."""
        path = os.path.join(self.path, name)
        try:
            stream = open(path, encoding="utf-8")
        except OSError as exc:
            raise OSError(f"failed to open textfile data file {path!r}: {exc}") from exc
        with stream:
            try:
                families = parse_text(stream.read())
            except ValueError as exc:
                raise ValueError(f"failed to parse textfile data from {path!r}: {exc}") from exc

            if has_timestamps(families):
                raise ValueError(
                    f"textfile {path!r} contains unsupported client-side timestamps, "
                    "skipping entire file"
                )

            metrics: list[Metric] = []
            for family in families.values():
                if family.help is None:
                    family.help = f"Metric read from {path}"
                metrics.extend(convert_metric_family(family))

            # Stat only after parsing, so that a failure does not appear fresh.
            try:
                stat = os.fstat(stream.fileno())
            except OSError as exc:
                raise OSError(f"failed to stat {path!r}: {exc}") from exc
        return metrics, float(stat.st_mtime_ns // 10**9)

    def update(self) -> list[Metric]:
        errored = False
        try:
            names = sorted(os.listdir(self.path))
        except OSError as exc:
            names = []
            if self.path:
                errored = True
                self.logger.error(
                    "failed to read textfile collector directory %s: %s", self.path, exc
                )

        metrics: list[Metric] = []
        mtimes: dict[str, float] = {}
        for name in names:
            if not name.endswith(".prom"):
                continue
            try:
                file_metrics, mtime = self.process_file(name)
            except (OSError, ValueError) as exc:
                errored = True
                self.logger.error("failed to collect textfile data from %s: %s", name, exc)
                continue
            metrics.extend(file_metrics)
            mtimes[name] = mtime

        for name in sorted(mtimes):
            value = self.mtime if self.mtime is not None else mtimes[name]
            metrics.append(Metric(MTIME_DESC, ValueType.GAUGE, value, (name,)))

        metrics.append(Metric(SCRAPE_ERROR_DESC, ValueType.GAUGE, 1.0 if errored else 0.0))
        return metrics


register_collector(
    "textfile",
    True,
    lambda logger: TextFileCollector(logger=logger, path=_settings["directory"]),
)