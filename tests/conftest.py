"""Pytest configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from e2e_harness.core.config import HarnessSettings
from tests.helpers.fakes import FakeSession

# Configure asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    """Fast settings pointing at throwaway fixture paths."""
    return HarnessSettings(
        binary=tmp_path / "journald-exporter",
        key_dir=tmp_path / "keys",
        certificate=tmp_path / "cert.pem",
        private_key=tmp_path / "key.pem",
        config_dir=tmp_path / "configs",
        duration=30,
        poll_interval=0.05,
        request_timeout=0.5,
        settle_delay=0.05,
        exit_grace=2.0,
        require_root=False,
    )


@pytest.fixture
def fixtures(settings: HarnessSettings) -> HarnessSettings:
    """Create the fixture files the setup script would have produced."""
    settings.key_dir.mkdir(parents=True)
    settings.credential_path.write_text("s3cret-key\n")
    settings.certificate.write_text("cert")
    settings.private_key.write_text("key")
    return settings


@pytest.fixture
def fake_session(tmp_path: Path) -> FakeSession:
    return FakeSession(pidfile=tmp_path / "unit.pid")
