"""Supervision harness that runs the exporter under systemd and probes it."""

__version__ = "0.1.0"
