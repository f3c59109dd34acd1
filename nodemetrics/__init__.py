"""Host metrics collectors and an HTTP exporter for the Prometheus text format."""

__version__ = "0.1.0"