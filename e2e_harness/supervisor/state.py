"""Supervisor states, termination reasons and the subordinate handle."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from e2e_harness.core.exceptions import HarnessError


class SupervisorState(Enum):
    """Supervisor lifecycle, in forward order."""

    SPAWNING = 0
    AWAITING_READY = 1
    PROBING = 2
    TERMINATING = 3
    TERMINATED = 4

    def can_advance_to(self, new: SupervisorState) -> bool:
        if self is SupervisorState.TERMINATED:
            return False
        if new is SupervisorState.TERMINATING:
            return self is not SupervisorState.TERMINATING
        return new.value > self.value


class TerminationReason(Enum):
    """Why the run is being shut down."""

    ROOT_CANCELLED = "root_cancelled"
    PROBE_FAILED = "probe_failed"
    SUBORDINATE_EXITED = "subordinate_exited"
    SUBORDINATE_ERRORED = "subordinate_errored"
    DURATION_ELAPSED = "duration_elapsed"

    @property
    def is_failure(self) -> bool:
        return self in (
            TerminationReason.PROBE_FAILED,
            TerminationReason.SUBORDINATE_ERRORED,
        )


class UnitNotDiscoveredError(HarnessError):
    """The unit name was read before the session manager reported it."""

    error_code = "UNIT_NOT_DISCOVERED"
    message = "Unit name not discovered yet"


@dataclass
class SubordinateHandle:
    """The spawned launcher process and the unit it reported."""

    pid: int
    argv: list[str] = field(default_factory=list)
    _unit: str | None = None

    @property
    def has_unit(self) -> bool:
        return self._unit is not None

    @property
    def unit(self) -> str:
        if self._unit is None:
            raise UnitNotDiscoveredError(details={"pid": self.pid})
        return self._unit

    def record_unit(self, unit: str) -> bool:
        """Set the unit name once; later calls are ignored."""
        if self._unit is not None:
            return False
        self._unit = unit
        return True
