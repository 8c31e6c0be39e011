"""Command lines for the subordinate and the systemd tooling around it."""

from __future__ import annotations

from dataclasses import dataclass

from e2e_harness.core.config import HarnessSettings


def service_argv(settings: HarnessSettings) -> list[str]:
    """Build the exporter's own command line."""
    argv = [str(settings.binary)]

    if settings.input_format == "config":
        argv += ["--config", str(settings.config_path)]
        return argv

    argv += ["--port", str(settings.port), "--key-dir", str(settings.key_dir)]
    if settings.is_https:
        argv += [
            "--certificate", str(settings.certificate),
            "--private-key", str(settings.private_key),
        ]
    return argv


@dataclass
class SystemdSession:
    """
    Runs the subordinate as a transient systemd unit.

    Stopping the unit stops the whole service tree, and systemd enforces the
    notify/watchdog contract on our behalf.
    """

    watchdog_sec: str = "5s"
    start_timeout_sec: str = "5s"

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> "SystemdSession":
        return cls(
            watchdog_sec=settings.watchdog_sec,
            start_timeout_sec=settings.start_timeout_sec,
        )

    def launch_argv(self, service: list[str]) -> list[str]:
        return [
            "systemd-run",
            "--wait",
            "--collect",
            "--property=Type=notify",
            f"--property=WatchdogSec={self.watchdog_sec}",
            f"--property=TimeoutStartSec={self.start_timeout_sec}",
            *service,
        ]

    def stop_argv(self, unit: str) -> list[str]:
        return ["systemctl", "stop", unit]

    def follow_argv(self, unit: str) -> list[str]:
        return ["journalctl", "--unit", unit, "--follow", "--output=cat"]

    def inspect_argvs(self, unit: str) -> list[list[str]]:
        return [
            ["journalctl", "--unit", unit, "--catalog", "--output=cat"],
            ["systemctl", "status", unit],
        ]
