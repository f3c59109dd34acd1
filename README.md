# nodemetrics

An exporter for host-level metrics. It gathers statistics about the machine
it runs on and serves them over HTTP in the Prometheus text exposition format.
It has no dependencies outside the standard library.

## Collectors

| Name       | Module                        | Default  | What it reports                                                  |
|------------|-------------------------------|----------|------------------------------------------------------------------|
| `tcpstat`  | `nodemetrics.tcpstat`         | disabled | TCP connection states and queued bytes from `/proc/net/tcp` and `/proc/net/tcp6` |
| `vmstat`   | `nodemetrics.vmstat`          | enabled  | `/proc/vmstat` fields matching `^(oom_kill\|pgpg\|pswp\|pg.*fault).*` |
| `uname`    | `nodemetrics.uname`           | enabled  | `node_uname_info` with sysname, release, version, machine, nodename and domainname labels |
| `time`     | `nodemetrics.timecollector`   | enabled  | `node_time_seconds`, the current system time                     |
| `zfs`      | `nodemetrics.zfs`             | enabled  | ZFS kstat counters, pool I/O, dataset and pool state metrics from `/proc/spl/kstat/zfs` |
| `textfile` | `nodemetrics.textfile`        | enabled  | metrics read from `*.prom` files in a directory, their mtimes and a scrape error flag |

Each scrape also reports, per collector, `node_scrape_collector_duration_seconds`
and `node_scrape_collector_success`. A collector that fails or has no data
(for example `zfs` on a host without ZFS) gets a success value of 0 and does
not break the scrape.

## Installation

```
pip install .
```

## Running

```
nodemetrics
```

By default metrics are served at `http://localhost:9100/metrics`; any other
path returns a small HTML page linking to the metrics. Options:

- `--web.listen-address` (default `:9100`)
- `--web.telemetry-path` (default `/metrics`)
- `--web.disable-exporter-metrics`: leave out `promhttp_*` and `process_*` metrics
- `--web.max-requests` (default `40`, `0` for no limit): parallel scrapes; above it the server answers 503
- `--collector.disable-defaults`: start with every collector disabled
- `--collector.<name>` / `--no-collector.<name>`: switch a single collector on or off
- `--collector.textfile.directory`: directory of `*.prom` files for the `textfile` collector
- `--log.level` (`debug`, `info`, `warn`, `error`)
- `--version`

Run `nodemetrics --help` for the full list.

A scrape can be limited to chosen collectors with repeated `collect[]`
query parameters:

```
http://localhost:9100/metrics?collect[]=time&collect[]=uname
```

Naming an unknown or disabled collector gives a 400 response.

## Library use

Parsing and rendering the exposition format:

```python
from nodemetrics.metrics import parse_text, render
from nodemetrics.textfile import convert_metric_family

families = parse_text("dummy_metric 1\n")
metrics = [m for family in families.values() for m in convert_metric_family(family)]
print(render(metrics))
```

`parse_text` raises `nodemetrics.metrics.ParseError` on malformed input.

Reading the TCP table:

```python
from nodemetrics.tcpstat import TCPConnectionState, get_tcp_stats

stats = get_tcp_stats("/proc/net/tcp")
print(stats.get(TCPConnectionState.ESTABLISHED, 0.0))
```

Every collector class (`TCPStatCollector`, `VMStatCollector`, `UnameCollector`,
`TimeCollector`, `ZFSCollector`, `TextFileCollector`, `SystemdCollector`) has an
`update()` method returning a list of `Metric` objects. `nodemetrics.exporter.Exporter`
runs the enabled collectors and returns the rendered text from `render(filters)`.

## Systemd

`nodemetrics.systemd.SystemdCollector` reports unit states, a per-state unit
summary, socket and timer statistics, the system running state and the
systemd version, and optionally task, restart and start-time metrics. It talks
to the systemd manager by running the `busctl` command, so `busctl` must be
installed. Units are chosen with `include` and `exclude` regular expressions
(`filter_units`, `compile_unit_patterns`).

## What is not provided

- The `nodemetrics` command does not load the systemd collector, and has no
  options for it; use `SystemdCollector` from Python instead.
- There is no TLS or authentication for the HTTP server.
- Exporter self-metrics are limited to `promhttp_metric_handler_*`,
  `process_cpu_seconds_total` and `process_start_time_seconds`.

## Tests

```
pip install .[test]
pytest
```