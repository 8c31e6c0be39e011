"""Supervision of the exporter: spawn, classify, probe, terminate."""

from e2e_harness.supervisor.classifier import ClassifiedLine, LineKind, classify
from e2e_harness.supervisor.exit_status import translate_exit_status
from e2e_harness.supervisor.launcher import SystemdSession, service_argv
from e2e_harness.supervisor.prober import HealthProber, ProbeOutcome, ProbeResult
from e2e_harness.supervisor.state import SupervisorState, TerminationReason
from e2e_harness.supervisor.supervisor import Supervisor

__all__ = [
    "ClassifiedLine",
    "HealthProber",
    "LineKind",
    "ProbeOutcome",
    "ProbeResult",
    "Supervisor",
    "SupervisorState",
    "SystemdSession",
    "TerminationReason",
    "classify",
    "service_argv",
    "translate_exit_status",
]
