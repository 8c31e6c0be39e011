"""
Entry point: a giant smoke test of the exporter.

Runs the release binary as a transient systemd unit, polls its metrics
endpoint for the configured duration, stops it and exits with a status CI
can read.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from e2e_harness.core.cancellation import CancellationToken
from e2e_harness.core.config import HarnessSettings
from e2e_harness.core.exceptions import ConfigurationError, SetupError
from e2e_harness.core.logging import get_logger, setup_logging
from e2e_harness.core.preconditions import check_preconditions, read_credential
from e2e_harness.supervisor.prober import HealthProber
from e2e_harness.supervisor.supervisor import Supervisor

logger = get_logger("main")


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="e2e-harness")
    p.add_argument("-p", dest="port", type=int, help="Port the exporter listens on.")
    p.add_argument("-d", dest="duration", type=int, help="Test duration in seconds.")
    p.add_argument("-b", dest="binary", help="Path to the release binary.")
    p.add_argument("-f", dest="input_format", choices=("flags", "config"), help="Input format.")
    p.add_argument("-t", dest="transport", choices=("http", "https"), help="Transport type.")
    return p.parse_args(argv)


def load_settings(argv: Optional[Sequence[str]] = None) -> HarnessSettings:
    """Merge command-line overrides over environment settings."""
    args = _parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    if overrides.get("binary") == "":
        raise ConfigurationError("Release binary path must not be empty.")
    try:
        return HarnessSettings(**overrides)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(messages, details={"errors": e.errors()}) from e


async def run_harness(settings: HarnessSettings, credential: str) -> int:
    """Wire signals to the root token and run one supervised session."""
    root = CancellationToken("root")
    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, root.cancel, f"received {sig.name}")

    try:
        async with HealthProber.from_settings(settings, credential) as prober:
            supervisor = Supervisor(settings, prober, root)
            return await supervisor.run()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        settings = load_settings(argv)
        setup_logging(settings)
        check_preconditions(settings)
        credential = read_credential(settings)
    except SetupError as e:
        logger.debug("Setup failed", extra={"extra_fields": e.to_dict()})
        print(e.message, file=sys.stderr)
        return e.exit_code

    return asyncio.run(run_harness(settings, credential))


if __name__ == "__main__":
    sys.exit(main())
