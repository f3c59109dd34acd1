"""HTTP exporter serving node metrics in the text exposition format."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Sequence
from urllib.parse import parse_qs, urlsplit

from . import tcpstat, timecollector, uname, vmstat, zfs  # noqa: F401  (registration)
from .metrics import Desc, Metric, ValueType, render
from .registry import (
    NodeCollector,
    available_collectors,
    disable_default_collectors,
    set_collector_enabled,
)
from .textfile import set_textfile_directory

_VERSION = "1.1.0"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_START_TIME = time.time()

_BUILD_INFO_DESC = Desc(
    "node_exporter_build_info",
    "A metric with a constant '1' value labeled by version and pythonversion "
    "from which node_exporter was built.",
    ("pythonversion", "version"),
)
_IN_FLIGHT_DESC = Desc(
    "promhttp_metric_handler_requests_in_flight",
    "Current number of scrapes being served.",
)
_REQUESTS_DESC = Desc(
    "promhttp_metric_handler_requests_total",
    "Total number of scrapes by HTTP status code.",
    ("code",),
)
_CPU_DESC = Desc(
    "process_cpu_seconds_total",
    "Total user and system CPU time spent in seconds.",
)
_START_DESC = Desc(
    "process_start_time_seconds",
    "Start time of the process since unix epoch in seconds.",
)


class FilterError(ValueError):
    """The requested collector filters cannot be satisfied."""


class TooManyRequestsError(Exception):
    """The limit of parallel scrapes is reached."""


class Exporter:
    """Gathers metrics from the collectors, optionally filtered by name."""

    def __init__(
        self,
        include_exporter_metrics: bool = True,
        max_requests: int = 40,
        logger: logging.Logger | None = None,
    ):
        self.logger = logger or logging.getLogger("nodemetrics")
        self.include_exporter_metrics = include_exporter_metrics
        self.max_requests = max_requests
        self._limit = threading.BoundedSemaphore(max_requests) if max_requests > 0 else None
        self._lock = threading.Lock()
        self._requests = {"200": 0, "500": 0, "503": 0}
        self._in_flight = 0
        self._unfiltered = self._node_collector(())

    def _node_collector(self, filters: Sequence[str]) -> NodeCollector:
        try:
            collector = NodeCollector(filters, self.logger)
        except ValueError as exc:
            raise FilterError(f"couldn't create collector: {exc}") from exc
        if not filters:
            self.logger.info("Enabled collectors")
            for name in sorted(collector.collectors):
                self.logger.info("collector=%s", name)
        return collector

    def _count(self, code: str) -> None:
        with self._lock:
            self._requests[code] += 1

    def _exporter_metrics(self) -> list[Metric]:
        with self._lock:
            in_flight = self._in_flight
            requests = dict(self._requests)
        times = os.times()
        metrics = [
            Metric(_IN_FLIGHT_DESC, ValueType.GAUGE, float(in_flight)),
            Metric(_CPU_DESC, ValueType.COUNTER, times.user + times.system),
            Metric(_START_DESC, ValueType.GAUGE, float(int(_START_TIME))),
        ]
        metrics.extend(
            Metric(_REQUESTS_DESC, ValueType.COUNTER, float(count), (code,))
            for code, count in requests.items()
        )
        return metrics

    def render(self, filters: Iterable[str] = ()) -> str:
        """Scrape the collectors and return the exposition text.

        Raises FilterError for unknown or disabled collectors and
        TooManyRequestsError when the parallel scrape limit is reached.
        """
        filters = list(filters)
        self.logger.debug("collect query: filters=%s", filters)
        collector = self._node_collector(filters) if filters else self._unfiltered

        if self._limit is not None and not self._limit.acquire(blocking=False):
            self._count("503")
            raise TooManyRequestsError(
                f"Limit of concurrent requests reached ({self.max_requests}), try again later."
            )
        try:
            with self._lock:
                self._in_flight += 1
            try:
                metrics = [
                    Metric(
                        _BUILD_INFO_DESC,
                        ValueType.GAUGE,
                        1.0,
                        (platform.python_version(), _VERSION),
                    )
                ]
                if self.include_exporter_metrics:
                    metrics.extend(self._exporter_metrics())
                metrics.extend(collector.collect())
                text = render(metrics)
            except Exception:
                self._count("500")
                raise
            self._count("200")
            return text
        finally:
            with self._lock:
                self._in_flight -= 1
            if self._limit is not None:
                self._limit.release()


def _landing_page(metrics_path: str) -> str:
    return (
        "<html>\n"
        "<head><title>Node Exporter</title></head>\n"
        "<body>\n"
        "<h1>Node Exporter</h1>\n"
        f'<p><a href="{metrics_path}">Metrics</a></p>\n'
        "</body>\n"
        "</html>"
    )


def make_request_handler(exporter: Exporter, metrics_path: str = "/metrics") -> type:
    """Build a request handler class serving metrics and a landing page."""
    page = _landing_page(metrics_path).encode("utf-8")

    class _Handler(BaseHTTPRequestHandler):
        def _reply(self, status: int, body: bytes, content_type: str) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:  # noqa: N802
            url = urlsplit(self.path)
            if url.path != metrics_path:
                self._reply(200, page, "text/html; charset=utf-8")
                return
            filters = parse_qs(url.query, keep_blank_values=True).get("collect[]", [])
            try:
                body = exporter.render(filters)
            except FilterError as exc:
                exporter.logger.warning("Couldn't create filtered metrics handler: %s", exc)
                message = f"Couldn't create filtered metrics handler: {exc}"
                self._reply(400, message.encode("utf-8"), "text/plain; charset=utf-8")
            except TooManyRequestsError as exc:
                self._reply(503, str(exc).encode("utf-8"), "text/plain; charset=utf-8")
            except Exception as exc:
                exporter.logger.error("error serving metrics: %s", exc)
                message = f"An error has occurred while serving metrics:\n\n{exc}"
                self._reply(500, message.encode("utf-8"), "text/plain; charset=utf-8")
            else:
                self._reply(200, body.encode("utf-8"), CONTENT_TYPE)

        def log_message(self, format: str, *args) -> None:  # noqa: A002
            exporter.logger.debug(format, *args)

    return _Handler


def _parse_listen_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    try:
        number = int(port)
    except ValueError:
        raise ValueError(f"address {address}: invalid port") from None
    if not 0 <= number <= 65535:
        raise ValueError(f"address {address}: invalid port")
    return host.strip("[]"), number


def _collector_dest(name: str) -> str:
    return "collector_" + name


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="node_exporter", allow_abbrev=False)
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9100",
        help="Address on which to expose metrics and web interface.",
    )
    parser.add_argument(
        "--web.telemetry-path",
        dest="metrics_path",
        default="/metrics",
        help="Path under which to expose metrics.",
    )
    parser.add_argument(
        "--web.disable-exporter-metrics",
        dest="disable_exporter_metrics",
        action="store_true",
        help="Exclude metrics about the exporter itself (promhttp_*, process_*).",
    )
    parser.add_argument(
        "--web.max-requests",
        dest="max_requests",
        type=int,
        default=40,
        help="Maximum number of parallel scrape requests. Use 0 to disable.",
    )
    parser.add_argument(
        "--collector.disable-defaults",
        dest="disable_defaults",
        action="store_true",
        help="Set all collectors to disabled by default.",
    )
    parser.add_argument(
        "--collector.textfile.directory",
        dest="textfile_directory",
        default="",
        help="Directory to read text files with metrics from.",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        choices=("debug", "info", "warn", "error"),
        default="info",
        help="Only log messages with the given severity or above.",
    )
    parser.add_argument(
        "--version", action="version", version=f"node_exporter, version {_VERSION}"
    )
    for name, enabled in available_collectors().items():
        parser.add_argument(
            f"--collector.{name}",
            dest=_collector_dest(name),
            action=argparse.BooleanOptionalAction,
            default=None,
            help=f"Enable the {name} collector (default: {'enabled' if enabled else 'disabled'}).",
        )
    return parser


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Run the exporter until interrupted; return the exit status."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=_LEVELS[args.log_level],
        format="level=%(levelname)s ts=%(asctime)s caller=%(name)s msg=%(message)s",
    )
    logger = logging.getLogger("nodemetrics")

    try:
        host, port = _parse_listen_address(args.listen_address)
    except ValueError as exc:
        logger.error("%s", exc)
        return 1

    set_textfile_directory(args.textfile_directory)
    if args.disable_defaults:
        disable_default_collectors()
    for name in available_collectors():
        choice = getattr(args, _collector_dest(name))
        if choice is not None:
            set_collector_enabled(name, choice)

    logger.info("Starting node_exporter version=%s", _VERSION)
    logger.info("Build context python=%s", platform.python_version())
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        logger.warning(
            "Node Exporter is running as root user. This exporter is designed to run "
            "as unprivileged user, root is not required."
        )

    exporter = Exporter(not args.disable_exporter_metrics, args.max_requests, logger)
    handler = make_request_handler(exporter, args.metrics_path)
    try:
        server = ThreadingHTTPServer((host, port), handler)
    except OSError as exc:
        logger.error("%s", exc)
        return 1

    logger.info("Listening on address=%s", args.listen_address)
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0