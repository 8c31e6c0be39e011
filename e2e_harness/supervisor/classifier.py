"""
Classifier for the session manager's diagnostic lines.

systemd-run writes a handful of well-known lines to stderr:

    Running as unit: run-u42.service
    Job for run-u42.service failed because the control process exited with error code.
    See "systemctl status run-u42.service" and "journalctl -xeu run-u42.service" for details.

The first marks the unit as live, the second as failed to start, the third
is a hint that carries no information beyond the second. Everything else is
ordinary diagnostic text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

UNIT_NAME = r"[A-Za-z0-9@_-]+\.service"

_BECAME_LIVE = re.compile(rf"^Running as unit:\s*({UNIT_NAME})\b")
_FAILED_TO_START = re.compile(rf"^Job for ({UNIT_NAME}) failed\b")
_DETAILS_HINT = re.compile(r'^See "systemctl status[^"]*" and "journalctl[^"]*" for details\b')


class LineKind(Enum):
    """What a diagnostic line means to the supervisor."""

    BECAME_LIVE = "became_live"
    FAILED_TO_START = "failed_to_start"
    KNOWN_NOISE = "known_noise"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ClassifiedLine:
    kind: LineKind
    unit: str | None = None


def classify(line: str) -> ClassifiedLine:
    """Classify one line of diagnostic text."""
    match = _BECAME_LIVE.match(line)
    if match:
        return ClassifiedLine(LineKind.BECAME_LIVE, match.group(1))

    match = _FAILED_TO_START.match(line)
    if match:
        return ClassifiedLine(LineKind.FAILED_TO_START, match.group(1))

    if _DETAILS_HINT.match(line):
        return ClassifiedLine(LineKind.KNOWN_NOISE)

    return ClassifiedLine(LineKind.UNCLASSIFIED)
