"""Metric descriptions, constant metrics and the Prometheus text exposition format."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable


class ValueType(enum.Enum):
    """Kind of a metric or metric family."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"
    SUMMARY = "summary"
    HISTOGRAM = "histogram"


class ParseError(ValueError):
    """Raised when text in the exposition format cannot be parsed."""


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join non-empty name parts with underscores; an empty name gives ''."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Description of a metric: its name, help text and label names."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()
    const_labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variable_labels", tuple(self.variable_labels or ()))
        object.__setattr__(self, "const_labels", dict(self.const_labels or {}))


@dataclass
class Metric:
    """A constant metric sample bound to a description."""

    desc: Desc
    value_type: ValueType
    value: float = 0.0
    label_values: tuple[str, ...] = ()
    sample_count: int = 0
    sample_sum: float = 0.0
    quantiles: dict[float, float] = field(default_factory=dict)
    buckets: dict[float, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.label_values = tuple(self.label_values)
        if len(self.label_values) != len(self.desc.variable_labels):
            raise ValueError(
                f"inconsistent label cardinality for {self.desc.fq_name!r}: "
                f"expected {len(self.desc.variable_labels)} label values, "
                f"got {len(self.label_values)}"
            )

    @property
    def labels(self) -> list[tuple[str, str]]:
        """All label pairs, sorted by label name."""
        pairs = list(zip(self.desc.variable_labels, self.label_values))
        pairs.extend(self.desc.const_labels.items())
        return sorted(pairs)


@dataclass
class Sample:
    """One parsed metric of a family, with its labels."""

    labels: dict[str, str] = field(default_factory=dict)
    value: float | None = None
    timestamp_ms: int | None = None
    count: int = 0
    sum: float = 0.0
    quantiles: dict[float, float] = field(default_factory=dict)
    buckets: dict[float, int] = field(default_factory=dict)


@dataclass
class MetricFamily:
    """A parsed metric family."""

    name: str
    help: str | None = None
    type: ValueType = ValueType.UNTYPED
    samples: list[Sample] = field(default_factory=list)


_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


def _unescape(text: str, quotes: bool) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt == "n":
            out.append("\n")
        elif nxt == "\\":
            out.append("\\")
        elif nxt == '"' and quotes:
            out.append('"')
        else:
            raise ParseError(f"invalid escape sequence in {text!r}")
    return "".join(out)


def _parse_labels(text: str, pos: int, lineno: int) -> tuple[dict[str, str], int]:
    labels: dict[str, str] = {}
    pos += 1
    while True:
        while pos < len(text) and text[pos] in " \t":
            pos += 1
        if pos < len(text) and text[pos] == "}":
            return labels, pos + 1
        match = _LABEL_NAME_RE.match(text, pos)
        if not match:
            raise ParseError(f"line {lineno}: invalid label name")
        name = match.group()
        pos = match.end()
        while pos < len(text) and text[pos] in " \t":
            pos += 1
        if text[pos : pos + 2] != '="':
            raise ParseError(f"line {lineno}: expected '=\"' after label name {name!r}")
        pos += 2
        start = pos
        while pos < len(text) and text[pos] != '"':
            pos += 2 if text[pos] == "\\" else 1
        if pos >= len(text):
            raise ParseError(f"line {lineno}: unterminated label value")
        if name in labels:
            raise ParseError(f"line {lineno}: duplicate label name {name!r}")
        labels[name] = _unescape(text[start:pos], quotes=True)
        pos += 1
        while pos < len(text) and text[pos] in " \t":
            pos += 1
        if pos < len(text) and text[pos] == ",":
            pos += 1
        elif pos < len(text) and text[pos] == "}":
            return labels, pos + 1
        else:
            raise ParseError(f"line {lineno}: expected ',' or '}}' in label set")


def _parse_float(text: str, lineno: int) -> float:
    try:
        return float(text)
    except ValueError:
        raise ParseError(f"line {lineno}: invalid value {text!r}") from None


def parse_text(text: str) -> dict[str, MetricFamily]:
    """Parse exposition-format text into metric families keyed by name."""
    families: dict[str, MetricFamily] = {}
    grouped: dict[tuple[str, tuple[tuple[str, str], ...]], Sample] = {}

    def family(name: str) -> MetricFamily:
        if name not in families:
            families[name] = MetricFamily(name)
        return families[name]

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            tokens = line[1:].split(None, 2)
            if len(tokens) < 2 or tokens[0] not in ("HELP", "TYPE"):
                continue
            fam = family(tokens[1])
            rest = tokens[2] if len(tokens) > 2 else ""
            if tokens[0] == "HELP":
                if fam.help is not None:
                    raise ParseError(f"line {lineno}: second HELP line for {fam.name!r}")
                fam.help = _unescape(rest, quotes=False)
            else:
                if fam.samples:
                    raise ParseError(f"line {lineno}: TYPE line for {fam.name!r} after samples")
                try:
                    fam.type = ValueType(rest.strip().lower())
                except ValueError:
                    raise ParseError(f"line {lineno}: unknown metric type {rest!r}") from None
            continue

        match = _NAME_RE.match(line)
        if not match:
            raise ParseError(f"line {lineno}: invalid metric name")
        name = match.group()
        pos = match.end()
        labels: dict[str, str] = {}
        if pos < len(line) and line[pos] == "{":
            labels, pos = _parse_labels(line, pos, lineno)
        fields = line[pos:].split()
        if not fields or len(fields) > 2:
            raise ParseError(f"line {lineno}: expected value and optional timestamp")
        value = _parse_float(fields[0], lineno)
        timestamp = None
        if len(fields) == 2:
            try:
                timestamp = int(fields[1])
            except ValueError:
                raise ParseError(f"line {lineno}: invalid timestamp {fields[1]!r}") from None

        base, suffix = name, ""
        for candidate in ("_bucket", "_count", "_sum"):
            stem = name[: -len(candidate)]
            if name.endswith(candidate) and stem in families and families[stem].type in (
                ValueType.SUMMARY,
                ValueType.HISTOGRAM,
            ):
                base, suffix = stem, candidate
                break
        fam = family(base)

        if fam.type not in (ValueType.SUMMARY, ValueType.HISTOGRAM):
            fam.samples.append(Sample(labels=labels, value=value, timestamp_ms=timestamp))
            continue

        special = "quantile" if fam.type is ValueType.SUMMARY else "le"
        bound = None
        if suffix in ("", "_bucket"):
            if suffix == "_bucket" and fam.type is ValueType.SUMMARY or (
                suffix == "" and fam.type is ValueType.HISTOGRAM
            ):
                raise ParseError(f"line {lineno}: unexpected sample {name!r} for {fam.type.value}")
            if special not in labels:
                raise ParseError(f"line {lineno}: missing {special!r} label on {name!r}")
            bound = _parse_float(labels.pop(special), lineno)
        key = (base, tuple(sorted(labels.items())))
        sample = grouped.get(key)
        if sample is None:
            sample = Sample(labels=labels, timestamp_ms=timestamp)
            grouped[key] = sample
            fam.samples.append(sample)
        elif timestamp is not None:
            sample.timestamp_ms = timestamp
        if suffix == "_sum":
            sample.sum = value
        elif suffix == "_count":
            sample.count = int(value)
        elif fam.type is ValueType.SUMMARY:
            sample.quantiles[bound] = value
        else:
            sample.buckets[bound] = int(value)
    return families


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign, digit_tuple, exponent = Decimal(repr(float(value))).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    prefix = "-" if sign else ""
    point = len(digits) + exponent
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{prefix}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return prefix + digits + "0" * (point - len(digits))
    return f"{prefix}{digits[:point]}.{digits[point:]}"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    pairs = list(pairs)
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape_label(v)}"' for k, v in pairs) + "}"


def _render_metric(name: str, metric: Metric) -> list[str]:
    labels = metric.labels
    if metric.value_type is ValueType.SUMMARY:
        lines = [
            f"{name}{_label_text(labels + [('quantile', _format_float(q))])} {_format_float(v)}"
            for q, v in sorted(metric.quantiles.items())
        ]
    elif metric.value_type is ValueType.HISTOGRAM:
        lines = [
            f"{name}_bucket{_label_text(labels + [('le', _format_float(b))])} {c}"
            for b, c in sorted(metric.buckets.items())
        ]
        if not any(math.isinf(b) and b > 0 for b in metric.buckets):
            lines.append(f"{name}_bucket{_label_text(labels + [('le', '+Inf')])} {metric.sample_count}")
    else:
        return [f"{name}{_label_text(labels)} {_format_float(metric.value)}"]
    lines.append(f"{name}_sum{_label_text(labels)} {_format_float(metric.sample_sum)}")
    lines.append(f"{name}_count{_label_text(labels)} {metric.sample_count}")
    return lines


def render(metrics: Iterable[Metric]) -> str:
    """Render metrics in the text exposition format, families sorted by name."""
    by_name: dict[str, list[Metric]] = {}
    for metric in metrics:
        by_name.setdefault(metric.desc.fq_name, []).append(metric)
    out: list[str] = []
    for name in sorted(by_name):
        group = sorted(by_name[name], key=lambda m: [v for _, v in m.labels])
        first = group[0]
        out.append(f"# HELP {name} {_escape_help(first.desc.help)}")
        out.append(f"# TYPE {name} {first.value_type.value}")
        for metric in group:
            out.extend(_render_metric(name, metric))
    return "".join(line + "\n" for line in out)