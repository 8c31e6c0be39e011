"""Harness exceptions with structured details and exit codes."""

from __future__ import annotations

from typing import Any

# Exit code for failures detected before the subordinate is spawned.
EXIT_SETUP_FAILURE = 1

# Exit code for errors reported during a run whose subordinate exited cleanly.
EXIT_RUN_FAILURE = 1


class HarnessError(Exception):
    """Base harness exception with a structured error payload."""

    exit_code: int = EXIT_RUN_FAILURE
    error_code: str = "HARNESS_ERROR"
    message: str = "The harness failed"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.exit_code = exit_code or self.exit_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "exit_code": self.exit_code,
            **({"details": self.details} if self.details else {}),
        }


class SetupError(HarnessError):
    """Fatal problem found before anything was spawned."""

    exit_code = EXIT_SETUP_FAILURE
    error_code = "SETUP_ERROR"
    message = "Harness setup failed"


class ConfigurationError(SetupError):
    """Invalid arguments or settings."""

    error_code = "CONFIGURATION_ERROR"
    message = "Invalid harness configuration"


class PrivilegeError(SetupError):
    """The harness lacks the privilege needed to manage system units."""

    error_code = "INSUFFICIENT_PRIVILEGE"
    message = "This script must run as root"


class FixtureMissingError(SetupError):
    """A fixture produced by the setup script is missing."""

    error_code = "FIXTURE_MISSING"
    message = "Test fixture missing"


class SpawnError(HarnessError):
    """The subordinate could not be launched."""

    error_code = "SPAWN_FAILED"
    message = "Failed to spawn the subordinate"
