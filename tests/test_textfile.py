import os

import pytest

from nodemetrics.metrics import MetricFamily, Sample, ValueType, parse_text, render
from nodemetrics.textfile import TextFileCollector, convert_metric_family, has_timestamps

SCRAPE_OK = (
    "# HELP node_textfile_scrape_error 1 if there was an error opening or reading a file, 0 otherwise\n"
    "# TYPE node_textfile_scrape_error gauge\n"
    "node_textfile_scrape_error 0\n"
)
SCRAPE_FAILED = SCRAPE_OK.replace("node_textfile_scrape_error 0", "node_textfile_scrape_error 1")


def _collect(path):
    return render(TextFileCollector(path=str(path), mtime=1.0).update())


def test_no_metric_files(tmp_path):
    (tmp_path / "not_a_metric.txt").write_text("foo 1\n")
    assert _collect(tmp_path) == SCRAPE_OK


def test_nonexistent_path(tmp_path):
    assert _collect(tmp_path / "nonexistent_path") == SCRAPE_FAILED


def test_unset_path_is_not_an_error():
    assert render(TextFileCollector(path="").update()) == SCRAPE_OK


def test_two_metric_files(tmp_path):
    (tmp_path / "a.prom").write_text(
        "# HELP alpha_total Alpha.\n# TYPE alpha_total counter\nalpha_total{kind=\"x\"} 3\n"
    )
    (tmp_path / "b.prom").write_text("beta 2.5\n")
    b_path = os.path.join(str(tmp_path), "b.prom")
    expected = (
        "# HELP alpha_total Alpha.\n"
        "# TYPE alpha_total counter\n"
        'alpha_total{kind="x"} 3\n'
        f"# HELP beta Metric read from {b_path}\n"
        "# TYPE beta untyped\n"
        "beta 2.5\n"
        "# HELP node_textfile_mtime_seconds Unixtime mtime of textfiles successfully read.\n"
        "# TYPE node_textfile_mtime_seconds gauge\n"
        'node_textfile_mtime_seconds{file="a.prom"} 1\n'
        'node_textfile_mtime_seconds{file="b.prom"} 1\n'
    ) + SCRAPE_OK
    assert _collect(tmp_path) == expected


def test_client_side_timestamp_skips_file(tmp_path):
    (tmp_path / "metrics.prom").write_text("stamped_metric 1 1441205977284\n")
    out = _collect(tmp_path)
    assert out == SCRAPE_FAILED
    assert "stamped_metric" not in out


def test_different_metric_types(tmp_path):
    (tmp_path / "types.prom").write_text(
        "# TYPE c_total counter\nc_total 5\n"
        "# TYPE g gauge\ng -1.5\n"
        "u 7\n"
    )
    metrics = TextFileCollector(path=str(tmp_path), mtime=1.0).update()
    by_name = {m.desc.fq_name: m for m in metrics}
    assert by_name["c_total"].value_type is ValueType.COUNTER
    assert by_name["c_total"].value == 5.0
    assert by_name["g"].value_type is ValueType.GAUGE
    assert by_name["g"].value == -1.5
    assert by_name["u"].value_type is ValueType.UNTYPED
    assert by_name["u"].value == 7.0


def test_inconsistent_labels_are_filled(tmp_path):
    (tmp_path / "inconsistent.prom").write_text(
        "# HELP http_requests_total Total.\n"
        "# TYPE http_requests_total counter\n"
        'http_requests_total{code="200",handler="a"} 10\n'
        'http_requests_total{code="500"} 1\n'
    )
    out = _collect(tmp_path)
    assert 'http_requests_total{code="200",handler="a"} 10\n' in out
    assert 'http_requests_total{code="500",handler=""} 1\n' in out


def test_histogram(tmp_path):
    (tmp_path / "hist.prom").write_text(
        "# TYPE req histogram\n"
        'req_bucket{le="0.5"} 1\n'
        'req_bucket{le="+Inf"} 3\n'
        "req_sum 2.5\n"
        "req_count 3\n"
    )
    path = os.path.join(str(tmp_path), "hist.prom")
    expected = (
        f"# HELP req Metric read from {path}\n"
        "# TYPE req histogram\n"
        'req_bucket{le="0.5"} 1\n'
        'req_bucket{le="+Inf"} 3\n'
        "req_sum 2.5\n"
        "req_count 3\n"
    )
    assert expected in _collect(tmp_path)


def test_summary(tmp_path):
    (tmp_path / "summary.prom").write_text(
        "# HELP rpc Durations.\n"
        "# TYPE rpc summary\n"
        'rpc{quantile="0.5"} 0.2\n'
        "rpc_sum 1.5\n"
        "rpc_count 7\n"
    )
    expected = (
        "# HELP rpc Durations.\n"
        "# TYPE rpc summary\n"
        'rpc{quantile="0.5"} 0.2\n'
        "rpc_sum 1.5\n"
        "rpc_count 7\n"
    )
    assert expected in _collect(tmp_path)


def test_default_mtime_comes_from_file(tmp_path):
    target = tmp_path / "m.prom"
    target.write_text("m 1\n")
    os.utime(target, (1000, 1234))
    metrics = TextFileCollector(path=str(tmp_path)).update()
    mtimes = [m for m in metrics if m.desc.fq_name == "node_textfile_mtime_seconds"]
    assert [(m.label_values, m.value) for m in mtimes] == [(("m.prom",), 1234.0)]


def test_process_file_returns_metrics_and_mtime(tmp_path):
    target = tmp_path / "one.prom"
    target.write_text("# HELP one One.\none 4\n")
    os.utime(target, (50, 60))
    metrics, mtime = TextFileCollector(path=str(tmp_path)).process_file("one.prom")
    assert mtime == 60.0
    assert [(m.desc.fq_name, m.desc.help, m.value) for m in metrics] == [("one", "One.", 4.0)]


def test_process_file_parse_error(tmp_path):
    (tmp_path / "bad.prom").write_text("bad{ 1\n")
    with pytest.raises(ValueError, match="failed to parse"):
        TextFileCollector(path=str(tmp_path)).process_file("bad.prom")


def test_process_file_missing(tmp_path):
    with pytest.raises(OSError):
        TextFileCollector(path=str(tmp_path)).process_file("absent.prom")


def test_bad_file_marks_error_but_keeps_good_ones(tmp_path):
    (tmp_path / "bad.prom").write_text("bad{ 1\n")
    (tmp_path / "good.prom").write_text("good 1\n")
    out = _collect(tmp_path)
    assert "good 1\n" in out
    assert 'node_textfile_mtime_seconds{file="good.prom"} 1\n' in out
    assert "bad.prom" not in out
    assert out.endswith("node_textfile_scrape_error 1\n")


def test_has_timestamps():
    assert has_timestamps(parse_text("a 1 123\n")) is True
    assert has_timestamps(parse_text("a 1\n")) is False


def test_convert_metric_family_union_of_labels():
    family = MetricFamily(
        "x",
        help="X.",
        type=ValueType.GAUGE,
        samples=[Sample(labels={"a": "1"}, value=2.0), Sample(labels={"b": "2"}, value=3.0)],
    )
    metrics = convert_metric_family(family)
    assert [m.labels for m in metrics] == [[("a", "1"), ("b", "")], [("a", ""), ("b", "2")]]
    assert [m.value for m in metrics] == [2.0, 3.0]
    assert all(m.desc.help == "X." for m in metrics)