"""Best-effort helper processes: the journal follower and inspection commands."""

from __future__ import annotations

import asyncio
import subprocess
from typing import Callable

from e2e_harness.core.cancellation import CancellationToken
from e2e_harness.core.logging import get_logger

logger = get_logger("follower")


class DiagnosticFollower:
    """
    Streams a unit's journal to the console until its token is cancelled.

    Output is inherited from the harness. Failing to start or dying early is
    reported and otherwise ignored.
    """

    def __init__(self, argv: list[str], token: CancellationToken):
        self.argv = argv
        self.token = token
        self.returncode: int | None = None

    async def run(self) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv, stdin=subprocess.DEVNULL
            )
        except OSError as e:
            logger.warning(f"Diagnostic follower failed to start: {e}")
            return

        exited = asyncio.ensure_future(process.wait())
        cancelled = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({exited, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not exited.done():
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                await exited
        finally:
            if process.returncode is None and not exited.done():
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            for task in (exited, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exited, cancelled, return_exceptions=True)

        self.returncode = process.returncode
        if not self.token.cancelled:
            logger.warning(
                f"Diagnostic follower exited early with status {process.returncode}"
            )


async def run_inspection(argv: list[str], echo: Callable[[str], None]) -> int | None:
    """
    Run a diagnostic command to completion and echo its output.

    Failures are reported, never raised. Returns the exit status, or None if
    the command could not be run.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        logger.warning(f"Inspection command {argv[0]} failed: {e}")
        return None

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        raise

    for stream in (stdout, stderr):
        text = stream.decode("utf-8", errors="replace").rstrip()
        if text:
            echo(text)
    if process.returncode:
        logger.warning(f"Inspection command {argv[0]} exited with status {process.returncode}")
    return process.returncode


async def run_detached(argv: list[str]) -> int | None:
    """Run a command whose outcome nobody waits on; errors are logged."""
    try:
        process = await asyncio.create_subprocess_exec(*argv, stdin=subprocess.DEVNULL)
    except OSError as e:
        logger.error(f"Command {argv[0]} failed to start: {e}")
        return None
    returncode = await process.wait()
    if returncode:
        logger.warning(f"Command {' '.join(argv)} exited with status {returncode}")
    return returncode
