"""System information as reported by uname."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

from .metrics import Desc, Metric, ValueType, build_fq_name
from .registry import NAMESPACE, Collector, register_collector

_NO_DOMAIN = "(none)"
_DOMAINNAME_FILE = "/proc/sys/kernel/domainname"

UNAME_DESC = Desc(
    build_fq_name(NAMESPACE, "uname", "info"),
    "Labeled system information as provided by the uname system call.",
    ("sysname", "release", "version", "machine", "nodename", "domainname"),
)


@dataclass(frozen=True)
class Uname:
    """Fields of the uname system call."""

    sysname: str
    release: str
    version: str
    machine: str
    nodename: str
    domainname: str


def parse_hostname_and_domainname(nodename: str) -> tuple[str, str]:
    """Split a node name at the first dot into host name and domain name.

    Without a dot the domain name is "(none)", as on Linux.
    """
    host, _, domain = nodename.partition(".")
    return host, domain if domain else _NO_DOMAIN


def _linux_domainname() -> str:
    try:
        with open(_DOMAINNAME_FILE, encoding="utf-8") as stream:
            return stream.read().strip()
    except OSError:
        return _NO_DOMAIN


def get_uname() -> Uname:
    """Return the uname information of the running system."""
    info = os.uname()
    if sys.platform.startswith("linux"):
        nodename, domainname = info.nodename, _linux_domainname()
    else:
        nodename, domainname = parse_hostname_and_domainname(info.nodename)
    return Uname(
        sysname=info.sysname,
        release=info.release,
        version=info.version,
        machine=info.machine,
        nodename=nodename,
        domainname=domainname,
    )


class UnameCollector(Collector):
    """Exposes uname information as labels of a constant gauge."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    def update(self) -> list[Metric]:
        info = get_uname()
        return [
            Metric(
                UNAME_DESC,
                ValueType.GAUGE,
                1.0,
                (
                    info.sysname,
                    info.release,
                    info.version,
                    info.machine,
                    info.nodename,
                    info.domainname,
                ),
            )
        ]


if hasattr(os, "uname"):
    register_collector("uname", True, UnameCollector)