"""Translate a subordinate's exit into a shell-style exit status."""

from __future__ import annotations

import signal

# Shells report death by signal N as 128 + N.
SIGNAL_EXIT_BASE = 128


def translate_exit_status(exit_code: int | None, signal_number: int | None) -> int:
    """
    Map (exit code, terminating signal) to the harness exit code.

    A non-zero exit code wins, then a terminating signal, otherwise 0.
    """
    if exit_code:
        return exit_code
    if signal_number:
        return SIGNAL_EXIT_BASE + signal_number
    return 0


def split_returncode(returncode: int) -> tuple[int | None, int | None]:
    """Split an asyncio returncode into (exit code, signal number)."""
    if returncode < 0:
        return None, -returncode
    return returncode, None


def signal_name(signal_number: int | None) -> str | None:
    if signal_number is None:
        return None
    try:
        return signal.Signals(signal_number).name
    except ValueError:
        return str(signal_number)
