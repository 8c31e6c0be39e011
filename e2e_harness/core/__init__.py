"""Core infrastructure: settings, logging, exceptions, cancellation."""

from .cancellation import CancellationToken
from .config import HarnessSettings
from .exceptions import (
    ConfigurationError,
    FixtureMissingError,
    HarnessError,
    PrivilegeError,
    SetupError,
    SpawnError,
)


__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "FixtureMissingError",
    "HarnessError",
    "HarnessSettings",
    "PrivilegeError",
    "SetupError",
    "SpawnError",
]
