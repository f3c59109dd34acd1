"""ZFS statistics read from the kstat files under /proc/spl/kstat/zfs."""

from __future__ import annotations

import glob
import logging
import os
import re
from typing import IO, Callable, Iterable

from .metrics import Desc, Metric, ValueType, build_fq_name
from .registry import NAMESPACE, Collector, NoDataError, register_collector

# kstat data type of unsigned 64-bit values; other types are ignored.
KSTAT_DATA_UINT64 = "4"

ZFS_POOL_STATES = ("online", "degraded", "faulted", "offline", "removed", "unavail")

PROCPATH_BASE = "spl/kstat/zfs"

PATH_MAP = {
    "zfs_abd": "abdstats",
    "zfs_arc": "arcstats",
    "zfs_dbuf": "dbuf_stats",
    "zfs_dmu_tx": "dmu_tx",
    "zfs_dnode": "dnodestats",
    "zfs_fm": "fm",
    "zfs_vdev_cache": "vdev_cache_stats",
    "zfs_vdev_mirror": "vdev_mirror_stats",
    "zfs_xuio": "xuio_stats",
    "zfs_zfetch": "zfetchstats",
    "zfs_zil": "zil",
}

_UINT_RE = re.compile(r"[0-9]+")

SysctlHandler = Callable[[str, int], None]
PoolHandler = Callable[[str, str, int], None]
ObjsetHandler = Callable[[str, str, str, int], None]
StateHandler = Callable[[str, str, int], None]


class ZFSNotAvailableError(Exception):
    """ZFS or the requested ZFS statistics are not available."""

    def __init__(self, message: str = "ZFS / ZFS statistics are not available"):
        super().__init__(message)


def metric_name(sysctl: str) -> str:
    """The metric name of a sysctl key: its last dotted part, dashes made underscores."""
    return sysctl.split(".")[-1].replace("-", "_")


def _parse_uint64(text: str) -> int:
    if not _UINT_RE.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value >= 1 << 64:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _lines(stream: IO) -> Iterable[str]:
    for line in stream:
        if isinstance(line, bytes):
            line = line.decode()
        yield line.rstrip("\r\n")


def _is_header(parts: list[str]) -> bool:
    return parts == ["name", "type", "data"]


class ZFSCollector(Collector):
    """Exposes ZFS kstat counters, per-pool I/O, dataset and state metrics."""

    def __init__(self, logger: logging.Logger | None = None, proc_path: str = "/proc"):
        self.logger = logger or logging.getLogger(__name__)
        self.proc_path = proc_path
        self.procpath_base = PROCPATH_BASE
        self.path_map = dict(PATH_MAP)

    def _proc_file(self, *parts: str) -> str:
        return os.path.join(self.proc_path, *parts)

    def _open_proc_file(self, path: str) -> IO:
        full = self._proc_file(path)
        try:
            return open(full, encoding="utf-8")
        except OSError:
            self.logger.debug("Cannot open file for reading: %s", full)
            raise ZFSNotAvailableError() from None

    def _open_pool_file(self, path: str) -> IO:
        try:
            return open(path, encoding="utf-8")
        except OSError:
            # An exporting pool may remove its files between glob and open.
            self.logger.debug("Cannot open file for reading: %s", path)
            raise ZFSNotAvailableError() from None

    def update(self) -> list[Metric]:
        if not os.path.exists(self._proc_file(self.procpath_base)):
            error = ZFSNotAvailableError()
            self.logger.debug("%s", error)
            raise NoDataError(str(error))

        metrics: list[Metric] = []
        for subsystem in self.path_map:
            try:
                metrics.extend(self._update_zfs_stats(subsystem))
            except ZFSNotAvailableError as exc:
                # Kstat files appear as ZFS gains features; missing ones are fine.
                self.logger.debug("%s", exc)
        metrics.extend(self._update_pool_stats())
        return metrics

    def _update_zfs_stats(self, subsystem: str) -> list[Metric]:
        name = self.path_map[subsystem]
        metrics: list[Metric] = []
        with self._open_proc_file(os.path.join(self.procpath_base, name)) as stream:
            self.parse_procfs_file(
                stream,
                name,
                lambda sysctl, value: metrics.append(
                    self._sysctl_metric(subsystem, sysctl, value)
                ),
            )
        return metrics

    def _glob(self, pattern: str) -> list[str]:
        return sorted(glob.glob(self._proc_file(self.procpath_base, pattern)))

    def _update_pool_stats(self) -> list[Metric]:
        metrics: list[Metric] = []

        for path in self._glob("*/io"):
            with self._open_pool_file(path) as stream:
                self.parse_pool_procfs_file(
                    stream,
                    path,
                    lambda pool, sysctl, value: metrics.append(
                        self._pool_metric(pool, sysctl, value)
                    ),
                )

        for path in self._glob("*/objset-*"):
            with self._open_pool_file(path) as stream:
                self.parse_pool_objset_file(
                    stream,
                    path,
                    lambda pool, dataset, sysctl, value: metrics.append(
                        self._objset_metric(pool, dataset, sysctl, value)
                    ),
                )

        state_paths = self._glob("*/state")
        if not state_paths:
            self.logger.debug("Not found pool state files")
        for path in state_paths:
            with self._open_pool_file(path) as stream:
                self.parse_pool_state_file(
                    stream,
                    path,
                    lambda pool, state, active: metrics.append(
                        self._state_metric(pool, state, active)
                    ),
                )
        return metrics

    def parse_procfs_file(self, stream: IO, fmt_ext: str, handler: SysctlHandler) -> None:
        """Pass every uint64 kstat after the "name type data" header to the handler."""
        started = False
        for line in _lines(stream):
            parts = line.split()
            if not started and _is_header(parts):
                started = True
                continue
            if not started or len(parts) < 3:
                continue
            if parts[1] == KSTAT_DATA_UINT64:
                key = f"kstat.zfs.misc.{fmt_ext}.{parts[0]}"
                try:
                    value = _parse_uint64(parts[2])
                except ValueError:
                    raise ValueError(f"could not parse expected integer value for {key!r}") from None
                handler(key, value)
        if not started:
            raise ValueError(f"did not parse a single {fmt_ext!r} metric")

    def parse_pool_procfs_file(self, stream: IO, zpool_path: str, handler: PoolHandler) -> None:
        """Pass each column of a pool's io kstat to the handler with the pool name."""
        fields: list[str] | None = None
        for line in _lines(stream):
            parts = line.split()
            if fields is None:
                if len(parts) >= 12 and parts[0] == "nread":
                    fields = list(parts)
                continue

            elements = os.fspath(zpool_path).split("/")
            if len(elements) < 2:
                raise ValueError("zpool path did not return at least two elements")
            pool, kind = elements[-2], elements[-1]

            for index, name in enumerate(fields):
                key = f"kstat.zfs.misc.{kind}.{name}"
                if index >= len(parts):
                    raise ValueError(f"could not parse expected integer value for {key!r}: missing column")
                try:
                    value = _parse_uint64(parts[index])
                except ValueError as exc:
                    raise ValueError(
                        f"could not parse expected integer value for {key!r}: {exc}"
                    ) from exc
                handler(pool, key, value)

    def parse_pool_objset_file(self, stream: IO, zpool_path: str, handler: ObjsetHandler) -> None:
        """Pass every uint64 kstat of a dataset to the handler with pool and dataset names."""
        started = False
        pool = dataset = ""
        for line in _lines(stream):
            parts = line.split()
            if not started and _is_header(parts):
                started = True
                continue
            if not started or len(parts) < 3:
                continue
            if parts[0] == "dataset_name":
                pool = os.fspath(zpool_path).split("/")[-2]
                dataset = parts[2]
                continue
            if parts[1] == KSTAT_DATA_UINT64:
                key = f"kstat.zfs.misc.objset.{parts[0]}"
                try:
                    value = _parse_uint64(parts[2])
                except ValueError:
                    raise ValueError(f"could not parse expected integer value for {key!r}") from None
                handler(pool, dataset, key, value)
        if not started:
            raise ValueError(f"did not parse a single {pool} {dataset} metric")

    def parse_pool_state_file(self, stream: IO, zpool_path: str, handler: StateHandler) -> None:
        """Pass 1 for the pool's current state and 0 for every other known state."""
        actual = next(iter(_lines(stream)), "").lower()
        elements = os.fspath(zpool_path).split("/")
        if len(elements) < 2:
            raise ValueError("zpool path did not return at least two elements")
        pool = elements[-2]
        for state in ZFS_POOL_STATES:
            handler(pool, state, 1 if actual == state else 0)

    @staticmethod
    def _sysctl_metric(subsystem: str, sysctl: str, value: int) -> Metric:
        desc = Desc(build_fq_name(NAMESPACE, subsystem, metric_name(sysctl)), sysctl)
        return Metric(desc, ValueType.UNTYPED, float(value))

    @staticmethod
    def _pool_metric(pool: str, sysctl: str, value: int) -> Metric:
        desc = Desc(
            build_fq_name(NAMESPACE, "zfs_zpool", metric_name(sysctl)), sysctl, ("zpool",)
        )
        return Metric(desc, ValueType.UNTYPED, float(value), (pool,))

    @staticmethod
    def _objset_metric(pool: str, dataset: str, sysctl: str, value: int) -> Metric:
        desc = Desc(
            build_fq_name(NAMESPACE, "zfs_zpool_dataset", metric_name(sysctl)),
            sysctl,
            ("zpool", "dataset"),
        )
        return Metric(desc, ValueType.UNTYPED, float(value), (pool, dataset))

    @staticmethod
    def _state_metric(pool: str, state: str, active: int) -> Metric:
        desc = Desc(
            build_fq_name(NAMESPACE, "zfs_zpool", "state"),
            "kstat.zfs.misc.state",
            ("zpool", "state"),
        )
        return Metric(desc, ValueType.GAUGE, float(active), (pool, state))


register_collector("zfs", True, ZFSCollector)