import time

from nodemetrics.metrics import ValueType
from nodemetrics.registry import available_collectors
from nodemetrics.timecollector import TimeCollector


def test_update_reports_current_time():
    before = time.time()
    metrics = TimeCollector().update()
    after = time.time()
    assert len(metrics) == 1
    assert before - 1 <= metrics[0].value <= after + 1


def test_metric_description():
    metric = TimeCollector().update()[0]
    assert metric.desc.fq_name == "node_time_seconds"
    assert metric.desc.help == "System time in seconds since epoch (1970)."
    assert metric.value_type is ValueType.GAUGE


def test_time_advances():
    collector = TimeCollector()
    first = collector.update()[0].value
    second = collector.update()[0].value
    assert second >= first


def test_registered():
    assert "time" in available_collectors()