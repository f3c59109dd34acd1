"""Systemd unit, socket, timer and system state metrics."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from .metrics import Desc, Metric, ValueType, build_fq_name
from .registry import NAMESPACE, Collector, register_collector

# Minimum systemd version with the manager's SystemState property and the
# timer property LastTriggerUSec.
MIN_SYSTEMD_VERSION_SYSTEM_STATE = 212

UNIT_STATES = ("active", "activating", "deactivating", "inactive", "failed")

DEFAULT_UNIT_INCLUDE = ".+"
DEFAULT_UNIT_EXCLUDE = ".+\\.(automount|device|mount|scope|slice)"

_MAX_UINT64 = (1 << 64) - 1
_SUBSYSTEM = "systemd"
_VERSION_RE = re.compile(r"[0-9][0-9][0-9]")

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unit:
    """Status of one systemd unit as listed by the manager."""

    name: str
    description: str = ""
    load_state: str = ""
    active_state: str = ""
    sub_state: str = ""
    followed: str = ""
    path: str = ""
    job_id: int = 0
    job_type: str = ""
    job_path: str = "/"


class SystemdConnection(Protocol):
    """What the collector needs from a connection to the systemd manager."""

    def list_units(self) -> list[Unit]: ...

    def get_unit_property(self, unit: str, name: str): ...

    def get_unit_type_property(self, unit: str, unit_type: str, name: str): ...

    def get_manager_property(self, name: str): ...

    def close(self) -> None: ...


_DEST = "org.freedesktop.systemd1"
_MANAGER_PATH = "/org/freedesktop/systemd1"
_MANAGER_IFACE = "org.freedesktop.systemd1.Manager"
_PRIVATE_ADDRESS = "unix:path=/run/systemd/private"


class BusctlConnection:
    """Talks to the systemd manager through the busctl command."""

    def __init__(self, private: bool = False, timeout: float = 30.0):
        self.private = private
        self.timeout = timeout
        self._paths: dict[str, str] = {}

    def _busctl(self, *args: str):
        bus = f"--address={_PRIVATE_ADDRESS}" if self.private else "--system"
        command = ["busctl", bus, "--json=short", *args]
        try:
            done = subprocess.run(
                command, capture_output=True, text=True, check=True, timeout=self.timeout
            )
        except subprocess.CalledProcessError as exc:
            raise OSError(f"busctl failed: {exc.stderr.strip() or exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise OSError(f"busctl timed out: {exc}") from exc
        try:
            return json.loads(done.stdout)["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise OSError(f"unexpected busctl output: {done.stdout!r}") from exc

    def _unit_path(self, unit: str) -> str:
        if unit not in self._paths:
            data = self._busctl("call", _DEST, _MANAGER_PATH, _MANAGER_IFACE, "GetUnit", "s", unit)
            self._paths[unit] = data[0]
        return self._paths[unit]

    def list_units(self) -> list[Unit]:
        data = self._busctl("call", _DEST, _MANAGER_PATH, _MANAGER_IFACE, "ListUnits")
        units = []
        for entry in data[0]:
            (name, description, load, active, sub, followed, path, job_id, job_type, job_path) = entry
            self._paths[name] = path
            units.append(
                Unit(name, description, load, active, sub, followed, path, job_id, job_type, job_path)
            )
        return units

    def get_unit_property(self, unit: str, name: str):
        return self._busctl(
            "get-property", _DEST, self._unit_path(unit), "org.freedesktop.systemd1.Unit", name
        )

    def get_unit_type_property(self, unit: str, unit_type: str, name: str):
        return self._busctl(
            "get-property",
            _DEST,
            self._unit_path(unit),
            f"org.freedesktop.systemd1.{unit_type}",
            name,
        )

    def get_manager_property(self, name: str):
        return self._busctl("get-property", _DEST, _MANAGER_PATH, _MANAGER_IFACE, name)

    def close(self) -> None:
        self._paths.clear()


def summarize_units(units: Iterable[Unit]) -> dict[str, float]:
    """Count units per active state; every known state is present."""
    summary = {state: 0.0 for state in UNIT_STATES}
    for unit in units:
        summary[unit.active_state] = summary.get(unit.active_state, 0.0) + 1.0
    return summary


def filter_units(
    units: Iterable[Unit], include_pattern: re.Pattern, exclude_pattern: re.Pattern
) -> list[Unit]:
    """Keep loaded units that match the include and not the exclude pattern."""
    kept = []
    for unit in units:
        if (
            include_pattern.search(unit.name)
            and not exclude_pattern.search(unit.name)
            and unit.load_state == "loaded"
        ):
            _log.debug("Adding unit: %s", unit.name)
            kept.append(unit)
        else:
            _log.debug("Ignoring unit: %s", unit.name)
    return kept


def parse_systemd_version(text: str) -> int:
    """The first three-digit number in a version string, or 0 if there is none."""
    match = _VERSION_RE.search(str(text))
    if not match:
        _log.warning("Got invalid systemd version: %r", text)
        return 0
    return int(match.group())


def compile_unit_patterns(
    include: str = DEFAULT_UNIT_INCLUDE,
    exclude: str = DEFAULT_UNIT_EXCLUDE,
    old_include: str = "",
    old_exclude: str = "",
) -> tuple[re.Pattern, re.Pattern]:
    """Compile the anchored include and exclude patterns.

    The deprecated whitelist/blacklist values are used only when the
    corresponding new value is empty; otherwise a ValueError is raised.
    """
    if old_exclude:
        if exclude:
            raise ValueError(
                "--collector.systemd.unit-blacklist and --collector.systemd.unit-exclude "
                "are mutually exclusive"
            )
        _log.warning(
            "--collector.systemd.unit-blacklist is DEPRECATED and will be removed in 2.0.0, "
            "use --collector.systemd.unit-exclude"
        )
        exclude = old_exclude
    if old_include:
        if include:
            raise ValueError(
                "--collector.systemd.unit-whitelist and --collector.systemd.unit-include "
                "are mutually exclusive"
            )
        _log.warning(
            "--collector.systemd.unit-whitelist is DEPRECATED and will be removed in 2.0.0, "
            "use --collector.systemd.unit-include"
        )
        include = old_include
    _log.info("Parsed flag --collector.systemd.unit-include: %s", include)
    _log.info("Parsed flag --collector.systemd.unit-exclude: %s", exclude)
    return re.compile(f"^(?:{include})$"), re.compile(f"^(?:{exclude})$")


def _desc(name: str, help_text: str, labels: tuple[str, ...] = ()) -> Desc:
    return Desc(build_fq_name(NAMESPACE, _SUBSYSTEM, name), help_text, labels)


class SystemdCollector(Collector):
    """Exposes systemd unit states, socket, timer and task statistics."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        include: str = DEFAULT_UNIT_INCLUDE,
        exclude: str = DEFAULT_UNIT_EXCLUDE,
        old_include: str = "",
        old_exclude: str = "",
        private: bool = False,
        enable_task_metrics: bool = False,
        enable_restarts_metrics: bool = False,
        enable_start_time_metrics: bool = False,
        connect: Callable[[], SystemdConnection] | None = None,
    ):
        self.logger = logger or _log
        self.enable_task_metrics = enable_task_metrics
        self.enable_restarts_metrics = enable_restarts_metrics
        self.enable_start_time_metrics = enable_start_time_metrics
        self._connect = connect or (lambda: BusctlConnection(private=private))

        name = ("name",)
        self.unit_desc = _desc("unit_state", "Systemd unit", ("name", "state", "type"))
        self.unit_start_time_desc = _desc(
            "unit_start_time_seconds", "Start time of the unit since unix epoch in seconds.", name
        )
        self.unit_tasks_current_desc = _desc(
            "unit_tasks_current", "Current number of tasks per Systemd unit", name
        )
        self.unit_tasks_max_desc = _desc(
            "unit_tasks_max", "Maximum number of tasks per Systemd unit", name
        )
        self.system_running_desc = _desc(
            "system_running",
            "Whether the system is operational (see 'systemctl is-system-running')",
        )
        self.summary_desc = _desc("units", "Summary of systemd unit states", ("state",))
        self.n_restarts_desc = _desc(
            "service_restart_total", "Service unit count of Restart triggers", name
        )
        self.timer_last_trigger_desc = _desc(
            "timer_last_trigger_seconds", "Seconds since epoch of last trigger.", name
        )
        self.socket_accepted_desc = _desc(
            "socket_accepted_connections_total", "Total number of accepted socket connections", name
        )
        self.socket_current_desc = _desc(
            "socket_current_connections", "Current number of socket connections", name
        )
        self.socket_refused_desc = _desc(
            "socket_refused_connections_total", "Total number of refused socket connections", name
        )
        self.version_desc = _desc("version", "Detected systemd version")

        self.include_pattern, self.exclude_pattern = compile_unit_patterns(
            include, exclude, old_include, old_exclude
        )
        self.systemd_version = self._get_systemd_version()
        if self.systemd_version < MIN_SYSTEMD_VERSION_SYSTEM_STATE:
            self.logger.warning(
                "Detected systemd version %d is lower than minimum %d",
                self.systemd_version,
                MIN_SYSTEMD_VERSION_SYSTEM_STATE,
            )
            self.logger.warning("Some systemd state and timer metrics will not be available")

    def _get_systemd_version(self) -> int:
        try:
            conn = self._connect()
        except OSError as exc:
            self.logger.warning(
                "Unable to get systemd dbus connection, defaulting systemd version to 0: %s", exc
            )
            return 0
        with contextlib.closing(conn):
            try:
                version = conn.get_manager_property("Version")
            except (OSError, ValueError):
                self.logger.warning("Unable to get systemd version property, defaulting to 0")
                return 0
        return parse_systemd_version(version)

    def _timed(self, label: str, func: Callable[[], list[Metric]]) -> list[Metric]:
        begin = time.monotonic()
        result = func()
        self.logger.debug("%s took %.6f seconds", label, time.monotonic() - begin)
        return result

    def update(self) -> list[Metric]:
        conn = self._connect()
        with contextlib.closing(conn):
            try:
                all_units = conn.list_units()
            except (OSError, ValueError) as exc:
                raise OSError(f"couldn't get units: {exc}") from exc

            metrics = [
                Metric(self.summary_desc, ValueType.GAUGE, count, (state,))
                for state, count in summarize_units(all_units).items()
            ]
            units = filter_units(all_units, self.include_pattern, self.exclude_pattern)

            tasks: list[tuple[str, Callable[[], list[Metric]]]] = [
                ("collectUnitStatusMetrics", lambda: self._unit_status_metrics(conn, units))
            ]
            if self.enable_start_time_metrics:
                tasks.append(
                    ("collectUnitStartTimeMetrics", lambda: self._start_time_metrics(conn, units))
                )
            if self.enable_task_metrics:
                tasks.append(("collectUnitTasksMetrics", lambda: self._tasks_metrics(conn, units)))
            if self.systemd_version >= MIN_SYSTEMD_VERSION_SYSTEM_STATE:
                tasks.append(("collectTimers", lambda: self._timer_metrics(conn, units)))
            tasks.append(("collectSockets", lambda: self._socket_metrics(conn, units)))

            with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
                futures = [pool.submit(self._timed, label, func) for label, func in tasks]
                error: Exception | None = None
                if self.systemd_version >= MIN_SYSTEMD_VERSION_SYSTEM_STATE:
                    try:
                        metrics.extend(self._system_state_metrics(conn))
                    except OSError as exc:
                        error = exc
                for future in futures:
                    metrics.extend(future.result())

        metrics.append(Metric(self.version_desc, ValueType.GAUGE, float(self.systemd_version)))
        if error is not None:
            raise error
        return metrics

    def _type_property(self, conn: SystemdConnection, unit: str, unit_type: str, name: str):
        try:
            return conn.get_unit_type_property(unit, unit_type, name)
        except (OSError, ValueError) as exc:
            self.logger.debug("couldn't get unit %s of %s: %s", name, unit, exc)
            return None

    def _unit_status_metrics(self, conn: SystemdConnection, units: list[Unit]) -> list[Metric]:
        metrics = []
        for unit in units:
            service_type = ""
            if unit.name.endswith(".service"):
                value = self._type_property(conn, unit.name, "Service", "Type")
                service_type = "" if value is None else str(value)
            elif unit.name.endswith(".mount"):
                value = self._type_property(conn, unit.name, "Mount", "Type")
                service_type = "" if value is None else str(value)
            for state in UNIT_STATES:
                active = 1.0 if state == unit.active_state else 0.0
                metrics.append(
                    Metric(self.unit_desc, ValueType.GAUGE, active, (unit.name, state, service_type))
                )
            if self.enable_restarts_metrics and unit.name.endswith(".service"):
                # NRestarts appeared in systemd 235.
                restarts = self._type_property(conn, unit.name, "Service", "NRestarts")
                if restarts is not None:
                    metrics.append(
                        Metric(self.n_restarts_desc, ValueType.COUNTER, float(restarts), (unit.name,))
                    )
        return metrics

    def _socket_metrics(self, conn: SystemdConnection, units: list[Unit]) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".socket"):
                continue
            accepted = self._type_property(conn, unit.name, "Socket", "NAccepted")
            if accepted is None:
                continue
            metrics.append(
                Metric(self.socket_accepted_desc, ValueType.COUNTER, float(accepted), (unit.name,))
            )
            current = self._type_property(conn, unit.name, "Socket", "NConnections")
            if current is None:
                continue
            metrics.append(
                Metric(self.socket_current_desc, ValueType.GAUGE, float(current), (unit.name,))
            )
            # NRefused appeared in systemd 239.
            try:
                refused = conn.get_unit_type_property(unit.name, "Socket", "NRefused")
            except (OSError, ValueError):
                continue
            metrics.append(
                Metric(self.socket_refused_desc, ValueType.GAUGE, float(refused), (unit.name,))
            )
        return metrics

    def _start_time_metrics(self, conn: SystemdConnection, units: list[Unit]) -> list[Metric]:
        metrics = []
        for unit in units:
            if unit.active_state != "active":
                start_usec = 0
            else:
                try:
                    start_usec = conn.get_unit_property(unit.name, "ActiveEnterTimestamp")
                except (OSError, ValueError) as exc:
                    self.logger.debug("couldn't get unit StartTimeUsec of %s: %s", unit.name, exc)
                    continue
            metrics.append(
                Metric(
                    self.unit_start_time_desc, ValueType.GAUGE, float(start_usec) / 1e6, (unit.name,)
                )
            )
        return metrics

    def _tasks_metrics(self, conn: SystemdConnection, units: list[Unit]) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".service"):
                continue
            for prop, desc in (
                ("TasksCurrent", self.unit_tasks_current_desc),
                ("TasksMax", self.unit_tasks_max_desc),
            ):
                value = self._type_property(conn, unit.name, "Service", prop)
                # The maximum uint64 means the value is not set.
                if value is not None and value != _MAX_UINT64:
                    metrics.append(Metric(desc, ValueType.GAUGE, float(value), (unit.name,)))
        return metrics

    def _timer_metrics(self, conn: SystemdConnection, units: list[Unit]) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".timer"):
                continue
            last = self._type_property(conn, unit.name, "Timer", "LastTriggerUSec")
            if last is None:
                continue
            metrics.append(
                Metric(self.timer_last_trigger_desc, ValueType.GAUGE, float(last) / 1e6, (unit.name,))
            )
        return metrics

    def _system_state_metrics(self, conn: SystemdConnection) -> list[Metric]:
        try:
            state = conn.get_manager_property("SystemState")
        except (OSError, ValueError) as exc:
            raise OSError(f"couldn't get system state: {exc}") from exc
        running = 1.0 if str(state).strip('"') == "running" else 0.0
        return [Metric(self.system_running_desc, ValueType.GAUGE, running)]


register_collector("systemd", False, SystemdCollector)