import re

import pytest

from nodemetrics.systemd import (
    UNIT_STATES,
    SystemdCollector,
    Unit,
    compile_unit_patterns,
    filter_units,
    parse_systemd_version,
    summarize_units,
)


def unit_fixtures():
    return [
        Unit("foo", "foo desc", "loaded", "active", "running", "", "/org/freedesktop/systemd1/unit/foo", 0, "", "/"),
        Unit("bar", "bar desc", "not-found", "inactive", "dead", "", "/org/freedesktop/systemd1/unit/bar", 0, "", "/"),
        Unit("foobar", "bar desc", "not-found", "inactive", "dead", "", "/org/freedesktop/systemd1/unit/bar", 0, "", "/"),
        Unit("baz", "bar desc", "not-found", "inactive", "dead", "", "/org/freedesktop/systemd1/unit/bar", 0, "", "/"),
    ]


class FakeConnection:
    def __init__(self, units=(), version="245", state="running", props=None, unit_props=None,
                 state_error=False):
        self.units = list(units)
        self.version = version
        self.state = state
        self.props = props or {}
        self.unit_props = unit_props or {}
        self.state_error = state_error
        self.closed = False

    def list_units(self):
        return list(self.units)

    def get_unit_property(self, unit, name):
        try:
            return self.unit_props[(unit, name)]
        except KeyError:
            raise OSError("no such property") from None

    def get_unit_type_property(self, unit, unit_type, name):
        try:
            return self.props[(unit, unit_type, name)]
        except KeyError:
            raise OSError("no such property") from None

    def get_manager_property(self, name):
        if name == "Version":
            return self.version
        if name == "SystemState":
            if self.state_error:
                raise OSError("broken bus")
            return self.state
        raise OSError("unknown")

    def close(self):
        self.closed = True


def by_name(metrics, name):
    return [m for m in metrics if m.desc.fq_name == name]


def test_ignore_filter():
    include = re.compile("^foo$")
    exclude = re.compile("^bar$")
    filtered = filter_units(unit_fixtures(), include, exclude)
    for unit in filtered:
        assert include.search(unit.name) and not exclude.search(unit.name)
    assert [u.name for u in filtered] == ["foo"]


def test_ignore_filter_default_keeps_all():
    collector = SystemdCollector(connect=lambda: FakeConnection())
    fixtures = unit_fixtures()
    filtered = filter_units(fixtures, collector.include_pattern, collector.exclude_pattern)
    assert len(filtered) == len(fixtures) - 3


def test_summary():
    summary = summarize_units(unit_fixtures())
    for state in UNIT_STATES:
        expected = {"inactive": 3.0, "active": 1.0}.get(state, 0.0)
        assert summary[state] == expected


def test_summary_empty():
    assert summarize_units([]) == {state: 0.0 for state in UNIT_STATES}


def test_default_exclude_pattern():
    _, exclude = compile_unit_patterns()
    assert exclude.search("home.mount")
    assert not exclude.search("sshd.service")


def test_deprecated_flags_conflict():
    with pytest.raises(ValueError):
        compile_unit_patterns(".+", "x", "", "y")
    with pytest.raises(ValueError):
        compile_unit_patterns(".+", "", "y", "")


def test_deprecated_flags_used_when_new_empty():
    include, exclude = compile_unit_patterns("", "", "a.*", "ab")
    assert include.search("abc")
    assert exclude.search("ab")
    assert not exclude.search("abc")


@pytest.mark.parametrize(
    "text,expected",
    [("245", 245), ('"245.4-1ubuntu3"', 245), ("systemd 219", 219), ("v2", 0), ("", 0)],
)
def test_parse_systemd_version(text, expected):
    assert parse_systemd_version(text) == expected


def make_collector(conn, **kwargs):
    return SystemdCollector(connect=lambda: conn, **kwargs)


def test_old_version_skips_timers_and_state():
    units = [Unit("baz.timer", load_state="loaded", active_state="active")]
    props = {("baz.timer", "Timer", "LastTriggerUSec"): 1_000_000}
    conn = FakeConnection(units, version="200", props=props)
    metrics = make_collector(conn).update()
    assert by_name(metrics, "node_systemd_timer_last_trigger_seconds") == []
    assert by_name(metrics, "node_systemd_system_running") == []
    assert by_name(metrics, "node_systemd_version")[0].value == 200.0


def test_system_not_running():
    conn = FakeConnection(state="degraded")
    metrics = make_collector(conn).update()
    assert by_name(metrics, "node_systemd_system_running")[0].value == 0.0


def test_system_state_error_raises():
    conn = FakeConnection(state_error=True)
    with pytest.raises(OSError, match="couldn't get system state"):
        make_collector(conn).update()


def test_version_unavailable_defaults_to_zero():
    def broken():
        raise OSError("no bus")

    collector = SystemdCollector(connect=broken)
    assert collector.systemd_version == 0