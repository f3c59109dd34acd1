[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodemetrics"
version = "0.1.0"
description = "Host metrics exporter exposing system statistics in the Prometheus text format"
requires-python = ">=3.10"
dependencies = []
keywords = ["metrics", "monitoring", "prometheus", "exporter", "zfs", "systemd"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nodemetrics = "nodemetrics.exporter:main"

[tool.hatch.build.targets.wheel]
packages = ["nodemetrics"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
