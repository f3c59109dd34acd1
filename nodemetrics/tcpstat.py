"""TCP connection state counts read from /proc/net/tcp and /proc/net/tcp6."""

from __future__ import annotations

import enum
import logging
import os
import re
from typing import IO

from .metrics import Desc, Metric, ValueType, build_fq_name
from .registry import NAMESPACE, Collector, register_collector

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")
_SIGNED_HEX = re.compile(r"[+-]?[0-9a-fA-F]+")


class TCPConnectionState(enum.IntEnum):
    """Kernel TCP states, plus the two queue byte counters."""

    ESTABLISHED = 1
    SYN_SENT = 2
    SYN_RECV = 3
    FIN_WAIT1 = 4
    FIN_WAIT2 = 5
    TIME_WAIT = 6
    CLOSE = 7
    CLOSE_WAIT = 8
    LAST_ACK = 9
    LISTEN = 10
    CLOSING = 11
    RX_QUEUED_BYTES = 12
    TX_QUEUED_BYTES = 13

    @property
    def label(self) -> str:
        """The value of the ``state`` label for this state."""
        return self.name.lower()


def _label(state: int) -> str:
    try:
        return TCPConnectionState(state).label
    except ValueError:
        return "unknown"


def _state_key(state: int) -> int:
    try:
        return TCPConnectionState(state)
    except ValueError:
        return state


def _parse_unsigned_hex(text: str) -> int:
    if not _HEX_DIGITS.fullmatch(text):
        raise ValueError(f"invalid hexadecimal number: {text!r}")
    value = int(text, 16)
    if value >= 1 << 64:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _parse_int8_hex(text: str) -> int:
    if not _SIGNED_HEX.fullmatch(text):
        raise ValueError(f"invalid hexadecimal number: {text!r}")
    value = int(text, 16)
    if not -128 <= value <= 127:
        raise ValueError(f"value out of range: {text!r}")
    return value


def parse_tcp_stats(stream: IO) -> dict[int, float]:
    """Count connections per state and sum the tx/rx queue sizes.

    The first line is a header and is skipped. Known states are keyed by
    ``TCPConnectionState`` members, others by their plain integer value.
    """
    contents = stream.read()
    if isinstance(contents, bytes):
        contents = contents.decode()
    stats: dict[int, float] = {}

    def add(key: int, amount: float) -> None:
        stats[key] = stats.get(key, 0.0) + amount

    for line in contents.split("\n")[1:]:
        parts = line.split()
        if not parts:
            continue
        if len(parts) < 5:
            raise ValueError(f"invalid TCP stats line: {line!r}")
        queues = parts[4].split(":")
        if len(queues) < 2:
            raise ValueError(f"cannot parse tx_queues and rx_queues: {line!r}")
        add(TCPConnectionState.TX_QUEUED_BYTES, float(_parse_unsigned_hex(queues[0])))
        add(TCPConnectionState.RX_QUEUED_BYTES, float(_parse_unsigned_hex(queues[1])))
        add(_state_key(_parse_int8_hex(parts[3])), 1.0)
    return stats


def get_tcp_stats(path: str | os.PathLike) -> dict[int, float]:
    """Parse the TCP table at the given path."""
    with open(path, encoding="utf-8") as stream:
        return parse_tcp_stats(stream)


class TCPStatCollector(Collector):
    """Exposes the number of TCP connections per state."""

    def __init__(self, logger: logging.Logger | None = None, proc_path: str = "/proc"):
        self.logger = logger or logging.getLogger(__name__)
        self.proc_path = proc_path
        self.desc = Desc(
            build_fq_name(NAMESPACE, "tcp", "connection_states"),
            "Number of connection states.",
            ("state",),
        )

    def update(self) -> list[Metric]:
        stats = get_tcp_stats(os.path.join(self.proc_path, "net", "tcp"))
        tcp6 = os.path.join(self.proc_path, "net", "tcp6")
        if os.path.exists(tcp6):
            for state, value in get_tcp_stats(tcp6).items():
                stats[state] = stats.get(state, 0.0) + value
        return [
            Metric(self.desc, ValueType.GAUGE, value, (_label(state),))
            for state, value in stats.items()
        ]


register_collector("tcpstat", False, TCPStatCollector)