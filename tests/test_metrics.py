import math

import pytest

from nodemetrics.metrics import (
    Desc,
    Metric,
    MetricFamily,
    ParseError,
    ValueType,
    build_fq_name,
    parse_text,
    render,
)


def test_build_fq_name_joins_parts():
    assert build_fq_name("node", "tcp", "connection_states") == "node_tcp_connection_states"


def test_build_fq_name_skips_empty_parts():
    assert build_fq_name("node", "", "time_seconds") == "node_time_seconds"


def test_build_fq_name_empty_name():
    assert build_fq_name("node", "zfs", "") == ""


def test_metric_label_cardinality_checked():
    desc = Desc("x", "help", ("a", "b"))
    with pytest.raises(ValueError):
        Metric(desc, ValueType.GAUGE, 1.0, ("only",))


def test_render_simple_gauge():
    desc = Desc("node_time_seconds", "System time in seconds since epoch (1970).")
    text = render([Metric(desc, ValueType.GAUGE, 1.0)])
    assert text == (
        "# HELP node_time_seconds System time in seconds since epoch (1970).\n"
        "# TYPE node_time_seconds gauge\n"
        "node_time_seconds 1\n"
    )


def test_render_large_value_uses_exponent():
    desc = Desc("big", "h")
    assert "big 1e+06\n" in render([Metric(desc, ValueType.GAUGE, 1e6)])


def test_render_sorts_families_and_metrics():
    da = Desc("b_metric", "h", ("name",))
    db = Desc("a_metric", "h")
    text = render(
        [
            Metric(da, ValueType.COUNTER, 2.0, ("z",)),
            Metric(db, ValueType.GAUGE, 3.0),
            Metric(da, ValueType.COUNTER, 1.0, ("y",)),
        ]
    )
    lines = [line for line in text.splitlines() if not line.startswith("#")]
    assert lines == ['a_metric 3', 'b_metric{name="y"} 1', 'b_metric{name="z"} 2']


def test_gauge_round_trip_with_escaped_label():
    desc = Desc("m", "some help", ("path",))
    metric = Metric(desc, ValueType.GAUGE, 0.25, ('a"b\\c',))
    families = parse_text(render([metric]))
    fam = families["m"]
    assert fam.type is ValueType.GAUGE
    assert fam.help == "some help"
    assert fam.samples[0].labels == {"path": 'a"b\\c'}
    assert fam.samples[0].value == 0.25


def test_histogram_round_trip_adds_inf_bucket():
    desc = Desc("h", "hist", ("k",))
    metric = Metric(
        desc, ValueType.HISTOGRAM, label_values=("v",),
        sample_count=5, sample_sum=2.5, buckets={0.1: 1, 1.0: 3},
    )
    fam = parse_text(render([metric]))["h"]
    sample = fam.samples[0]
    assert fam.type is ValueType.HISTOGRAM
    assert sample.labels == {"k": "v"}
    assert sample.buckets == {0.1: 1, 1.0: 3, math.inf: 5}
    assert sample.count == 5
    assert sample.sum == 2.5


def test_summary_round_trip():
    desc = Desc("s", "sum")
    metric = Metric(
        desc, ValueType.SUMMARY, sample_count=4, sample_sum=8.0, quantiles={0.5: 1.5, 0.9: 3.0}
    )
    sample = parse_text(render([metric]))["s"].samples[0]
    assert sample.quantiles == {0.5: 1.5, 0.9: 3.0}
    assert (sample.count, sample.sum) == (4, 8.0)


def test_parse_untyped_without_help_and_timestamp():
    families = parse_text("dummy_metric 1\nother{a=\"b\"} 2 1234\n")
    assert families["dummy_metric"].help is None
    assert families["dummy_metric"].type is ValueType.UNTYPED
    assert families["other"].samples[0].timestamp_ms == 1234
    assert isinstance(families["other"], MetricFamily)


@pytest.mark.parametrize(
    "text",
    [
        "metric{a=\"b\" 1\n",
        "metric notanumber\n",
        "# TYPE m bogus\n",
        "m 1\n# TYPE m gauge\n",
        "metric{a=\"x\",a=\"y\"} 1\n",
        "# TYPE h histogram\nh_bucket 1\n",
    ],
)
def test_parse_errors(text):
    with pytest.raises(ParseError):
        parse_text(text)