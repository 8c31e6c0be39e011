"""Harness settings with Pydantic validation and environment loading."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# The config-file variants of the service hard-code this port.
CONFIG_FILE_PORT = 8080


class HarnessSettings(BaseSettings):
    """Harness settings loaded from E2E_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="E2E_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Subordinate service
    binary: Path = Field(
        default=Path("target/release/journald-exporter"),
        description="Path to the release binary under test",
    )
    port: int = Field(default=CONFIG_FILE_PORT, ge=1, le=65535)
    transport: Literal["http", "https"] = Field(
        default="http", description="Serve metrics over plain HTTP or TLS"
    )
    input_format: Literal["flags", "config"] = Field(
        default="flags",
        description="Pass discrete flags or a single --config file to the service",
    )

    # Run length
    duration: int = Field(
        default=60, ge=1, description="Seconds to keep probing before a clean stop"
    )

    # Fixtures produced by scripts/e2e-setup.sh
    key_dir: Path = Field(default=Path("/tmp/integ-test.keys"))
    key_file: str = Field(default="test.key", description="Credential file in key_dir")
    certificate: Path = Field(default=Path("/tmp/integ-test-cert.pem"))
    private_key: Path = Field(default=Path("/tmp/integ-test-key.pem"))
    config_dir: Path = Field(default=Path("test-configs"))

    # Timing (seconds)
    poll_interval: float = Field(default=5.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)
    settle_delay: float = Field(default=2.0, ge=0)
    exit_grace: float = Field(
        default=1.0,
        ge=0,
        description="Bound on draining output and reaping helpers after exit",
    )

    # Health endpoint
    host: str = "localhost"
    metrics_path: str = "/metrics"
    metrics_user: str = "metrics"

    # Session manager
    watchdog_sec: str = "5s"
    start_timeout_sec: str = "5s"
    kill_signal: str = Field(
        default="SIGKILL", description="Signal for an un-identified process tree"
    )

    require_root: bool = True

    # Logging
    log_level: str = Field(
        default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR"
    )
    log_format: Literal["text", "json"] = Field(default="text")

    @field_validator("binary", "config_dir", mode="after")
    @classmethod
    def resolve_path(cls, v: Path) -> Path:
        return v.resolve()

    @field_validator("metrics_path")
    @classmethod
    def validate_metrics_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("metrics_path must start with '/'")
        return v

    @field_validator("kill_signal")
    @classmethod
    def validate_kill_signal(cls, v: str) -> str:
        name = v.upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        if not hasattr(signal.Signals, name):
            raise ValueError(f"Unknown signal {v!r}")
        return name

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return upper

    @model_validator(mode="after")
    def check_config_port(self) -> "HarnessSettings":
        if self.input_format == "config" and self.port != CONFIG_FILE_PORT:
            raise ValueError(
                "Custom ports cannot be run when a config is used - the port is hard-coded."
            )
        return self

    @property
    def is_https(self) -> bool:
        return self.transport == "https"

    @property
    def credential_path(self) -> Path:
        return self.key_dir / self.key_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / f"valid-{self.transport}"

    @property
    def metrics_url(self) -> str:
        return f"{self.transport}://{self.host}:{self.port}{self.metrics_path}"

    @property
    def kill_signal_number(self) -> int:
        return int(signal.Signals[self.kill_signal])
