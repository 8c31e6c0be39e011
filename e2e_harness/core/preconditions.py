"""Eager environment checks run before anything is spawned."""

from __future__ import annotations

import os

from .config import HarnessSettings
from .exceptions import FixtureMissingError, PrivilegeError

SETUP_HINT = "Did you forget to run 'scripts/e2e-setup.sh' first?"


def check_preconditions(settings: HarnessSettings) -> None:
    """
    Verify privilege and fixtures.

    Raises a SetupError subclass describing the first problem found.
    """
    if settings.require_root and os.geteuid() != 0:
        raise PrivilegeError()

    fixtures = [
        (settings.key_dir, "API key directory missing."),
        (settings.certificate, "TLS public certificate missing."),
        (settings.private_key, "TLS private key missing."),
    ]
    for path, message in fixtures:
        if not path.exists():
            raise FixtureMissingError(
                f"{message} {SETUP_HINT}", details={"path": str(path)}
            )

    if settings.input_format == "config" and not settings.config_path.exists():
        raise FixtureMissingError(
            f"Config file {settings.config_path} missing.",
            details={"path": str(settings.config_path)},
        )


def read_credential(settings: HarnessSettings) -> str:
    """Load the shared metrics credential."""
    path = settings.credential_path
    try:
        credential = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise FixtureMissingError(
            f"Cannot read API key {path}: {e.strerror}. {SETUP_HINT}",
            details={"path": str(path)},
        ) from e
    if not credential:
        raise FixtureMissingError(f"API key {path} is empty.", details={"path": str(path)})
    return credential
