"""
Supervisor for one run of the exporter under a transient systemd unit.

Lifecycle:
1. Spawn systemd-run wrapping the exporter, piping its stderr to us
2. Classify each stderr line; hold unclassified lines back until readiness
3. On "Running as unit", follow the unit's journal and, after a settling
   delay, start the health prober for the configured duration
4. On "Job for ... failed", replay held lines, inspect the unit and stop
5. Root cancellation, probe failure, duration end and subordinate exit all
   funnel into terminate(), which acts at most once
6. When the launcher exits, translate its status into ours
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
from typing import Callable, Coroutine

from e2e_harness.core.cancellation import CancellationToken
from e2e_harness.core.config import HarnessSettings
from e2e_harness.core.exceptions import EXIT_RUN_FAILURE, EXIT_SETUP_FAILURE, SpawnError
from e2e_harness.core.logging import get_logger
from e2e_harness.supervisor.classifier import LineKind, classify
from e2e_harness.supervisor.exit_status import (
    signal_name,
    split_returncode,
    translate_exit_status,
)
from e2e_harness.supervisor.follower import DiagnosticFollower, run_detached, run_inspection
from e2e_harness.supervisor.launcher import SystemdSession, service_argv
from e2e_harness.supervisor.prober import HealthProber
from e2e_harness.supervisor.state import (
    SubordinateHandle,
    SupervisorState,
    TerminationReason,
)

logger = get_logger("supervisor")

# systemd-run can emit long property dumps on failure
STREAM_LIMIT = 1024 * 1024


def echo_stderr(line: str) -> None:
    print(line, file=sys.stderr, flush=True)


class Supervisor:
    """
    Owns the subordinate process and drives it from spawn to exit.

    Args:
        settings: Harness settings
        prober: Health prober started once the unit is live
        root: Root cancellation token, usually fed by SIGTERM/SIGINT
        session: Session manager building the systemd command lines
        echo: Sink for subordinate and inspection output
    """

    def __init__(
        self,
        settings: HarnessSettings,
        prober: HealthProber,
        root: CancellationToken,
        *,
        session: SystemdSession | None = None,
        echo: Callable[[str], None] = echo_stderr,
    ):
        self.settings = settings
        self.prober = prober
        self.root = root
        self.session = session or SystemdSession.from_settings(settings)
        self.echo = echo

        self.state = SupervisorState.SPAWNING
        self.reason: TerminationReason | None = None
        self.handle: SubordinateHandle | None = None
        self.exit_code: int | None = None
        self.failed = False
        self.stop_requests = 0
        self.kill_requests = 0

        self._process: asyncio.subprocess.Process | None = None
        self._buffer: list[str] | None = []
        self._probe_token = root.child("probe")
        self._follow_token = root.child("follower")
        # Independent of root: root cancellation prefers a graceful unit stop.
        self._kill_token = CancellationToken("spawn")
        self._probe_task: asyncio.Task | None = None
        self._inspection: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> int:
        """Run the subordinate to completion and return the harness exit code."""
        argv = self.session.launch_argv(service_argv(self.settings))
        logger.info("Spawning child")
        logger.debug(f"Command: {' '.join(argv)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            error = SpawnError(f"Failed to spawn {argv[0]}: {e}", details={"argv": argv})
            logger.error(f"Child errored: {error.message}")
            self.failed = True
            self.terminate(TerminationReason.SUBORDINATE_ERRORED)
            self._advance(SupervisorState.TERMINATED)
            self.exit_code = EXIT_SETUP_FAILURE
            return self.exit_code

        self.handle = SubordinateHandle(pid=self._process.pid, argv=argv)
        self._advance(SupervisorState.AWAITING_READY)
        self._kill_token.add_callback(self._kill_process_tree)
        unregister = self.root.add_callback(self._on_root_cancelled)

        reader = asyncio.create_task(self._read_diagnostics(), name="diagnostics")
        try:
            returncode = await self._process.wait()
            await self._on_exit(returncode, reader)
        finally:
            unregister()
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            await self._reap_background()

        return self.exit_code

    # =========================================================================
    # Termination
    # =========================================================================

    def terminate(self, reason: TerminationReason) -> bool:
        """
        Begin shutting the run down.

        Every trigger calls this. Only the first call has any effect; the
        rest return False.
        """
        if self.state in (SupervisorState.TERMINATING, SupervisorState.TERMINATED):
            return False

        previous = self.state
        self._advance(SupervisorState.TERMINATING)
        self.reason = reason
        if reason.is_failure:
            self.failed = True
        logger.info(f"Terminating from {previous.name}: {reason.value}")

        self._probe_token.cancel(f"terminating: {reason.value}")
        self._follow_token.cancel(f"terminating: {reason.value}")

        if self._process is None or self._process.returncode is not None:
            return True

        if self.handle is not None and self.handle.has_unit:
            self._request_stop(self.handle.unit)
        else:
            self._kill_token.cancel(f"terminating: {reason.value}")
        logger.info("Child terminate signal sent")
        return True

    def _on_root_cancelled(self, token: CancellationToken) -> None:
        logger.warning(f"Root cancelled: {token.reason}")
        self.terminate(TerminationReason.ROOT_CANCELLED)

    def _request_stop(self, unit: str) -> None:
        # Only the launcher's own exit is authoritative, not this command.
        self.stop_requests += 1
        self._spawn_background(run_detached(self.session.stop_argv(unit)), "stop")

    def _kill_process_tree(self, token: CancellationToken) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        self.kill_requests += 1
        try:
            os.killpg(self._process.pid, self.settings.kill_signal_number)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.error(f"Failed to signal child process group: {e}")

    # =========================================================================
    # Diagnostic stream
    # =========================================================================

    async def _read_diagnostics(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        try:
            async for raw in self._process.stderr:
                await self._on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Diagnostic stream errored: {e!r}")
            self.failed = True
            self.terminate(TerminationReason.SUBORDINATE_ERRORED)

    async def _on_line(self, line: str) -> None:
        if self._buffer is None:
            self.echo(line)
            return

        classified = classify(line)
        if classified.kind is LineKind.BECAME_LIVE:
            self._on_live(classified.unit)
        elif classified.kind is LineKind.FAILED_TO_START:
            await self._on_failed(classified.unit)
        elif classified.kind is LineKind.UNCLASSIFIED:
            self._buffer.append(line)

    def _on_live(self, unit: str) -> None:
        self.handle.record_unit(unit)
        logger.info(f"Detected transient unit name: {unit}")
        self._flush_buffer()

        if self.state is not SupervisorState.AWAITING_READY:
            return

        follower = DiagnosticFollower(self.session.follow_argv(unit), self._follow_token)
        self._spawn_background(follower.run(), "follower")
        self._probe_task = asyncio.create_task(self._probe_phase(), name="probe")

    async def _on_failed(self, unit: str) -> None:
        logger.error(f"Unit failed to initialize: {unit}")
        self.handle.record_unit(unit)
        self._flush_buffer()
        if self._inspection is None:
            self._inspection = asyncio.create_task(
                self._inspect_failed_unit(unit), name="inspection"
            )
        # Later lines wait for the inspection output. Cancelling the reader
        # leaves the inspection running; _on_exit awaits it.
        await asyncio.shield(self._inspection)

    async def _inspect_failed_unit(self, unit: str) -> None:
        # Run in sequence so the two outputs do not interleave.
        for argv in self.session.inspect_argvs(unit):
            await run_inspection(argv, self.echo)
        self.terminate(TerminationReason.SUBORDINATE_ERRORED)

    def _flush_buffer(self) -> None:
        if self._buffer is None:
            return
        lines, self._buffer = self._buffer, None
        for line in lines:
            self.echo(line)

    # =========================================================================
    # Probing
    # =========================================================================

    async def _probe_phase(self) -> None:
        if not await self._probe_token.sleep(self.settings.settle_delay):
            return
        if not self._advance(SupervisorState.PROBING):
            return

        probe = asyncio.ensure_future(self.prober.run(self._probe_token))
        try:
            done, _ = await asyncio.wait({probe}, timeout=self.settings.duration)
            if not done:
                logger.info(f"Test duration of {self.settings.duration}s elapsed")
                self.terminate(TerminationReason.DURATION_ELAPSED)
            outcome = await probe
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Health prober crashed")
            self.failed = True
            self.terminate(TerminationReason.PROBE_FAILED)
            return
        finally:
            if not probe.done():
                probe.cancel()
                await asyncio.gather(probe, return_exceptions=True)

        if outcome is not None:
            self.failed = True
            self.terminate(TerminationReason.PROBE_FAILED)

    # =========================================================================
    # Exit
    # =========================================================================

    async def _on_exit(self, returncode: int, reader: asyncio.Task) -> None:
        exit_code, signal_number = split_returncode(returncode)
        logger.info(f"Child exited with code {exit_code}, signal {signal_name(signal_number)}")
        self._follow_token.cancel("subordinate exited")

        done, _ = await asyncio.wait({reader}, timeout=self.settings.exit_grace)
        if not done and self._inspection is not None:
            # Inspection of a failed unit is not bounded by the exit grace.
            await self._inspection
            done, _ = await asyncio.wait({reader}, timeout=self.settings.exit_grace)
        if not done:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._flush_buffer()

        self.terminate(TerminationReason.SUBORDINATE_EXITED)

        status = translate_exit_status(exit_code, signal_number)
        if not status and self.failed:
            status = EXIT_RUN_FAILURE
        self.exit_code = status
        self._advance(SupervisorState.TERMINATED)
        logger.info(f"Run finished ({self.reason.value}), exit status {status}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _advance(self, new: SupervisorState) -> bool:
        if not self.state.can_advance_to(new):
            logger.debug(f"Ignoring transition {self.state.name} -> {new.name}")
            return False
        logger.debug(f"State {self.state.name} -> {new.name}")
        self.state = new
        return True

    def _spawn_background(self, coro: Coroutine, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reap_background(self) -> None:
        tasks = set(self._background)
        for task in (self._probe_task, self._inspection):
            if task is not None:
                tasks.add(task)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self.settings.exit_grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
