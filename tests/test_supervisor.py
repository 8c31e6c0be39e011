"""
Tests for the supervisor state machine.

These run a real subprocess (tests/helpers/fake_unit.py) standing in for
systemd-run, and a mocked metrics endpoint.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

import httpx
import pytest

from e2e_harness.core.cancellation import CancellationToken
from e2e_harness.supervisor.prober import HealthProber
from e2e_harness.supervisor.state import (
    SubordinateHandle,
    SupervisorState,
    TerminationReason,
    UnitNotDiscoveredError,
)
from e2e_harness.supervisor.supervisor import Supervisor
from tests.helpers.fakes import FakeSession, metrics_handler

UNIT = "run-u42.service"


def make_supervisor(settings, session, handler=None, root=None):
    prober = HealthProber.from_settings(
        settings, "s3cret", transport=httpx.MockTransport(handler or metrics_handler())
    )
    echoed: list[str] = []
    supervisor = Supervisor(
        settings,
        prober,
        root or CancellationToken("root"),
        session=session,
        echo=echoed.append,
    )
    return supervisor, prober, echoed


async def wait_until(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# =============================================================================
# State machine basics
# =============================================================================


class TestSupervisorState:
    def test_forward_transitions(self):
        assert SupervisorState.SPAWNING.can_advance_to(SupervisorState.AWAITING_READY)
        assert SupervisorState.AWAITING_READY.can_advance_to(SupervisorState.PROBING)

    def test_no_backward_transitions(self):
        assert not SupervisorState.PROBING.can_advance_to(SupervisorState.AWAITING_READY)
        assert not SupervisorState.TERMINATING.can_advance_to(SupervisorState.PROBING)

    def test_terminating_reachable_from_every_live_state(self):
        for state in (
            SupervisorState.SPAWNING,
            SupervisorState.AWAITING_READY,
            SupervisorState.PROBING,
        ):
            assert state.can_advance_to(SupervisorState.TERMINATING)
        assert not SupervisorState.TERMINATING.can_advance_to(SupervisorState.TERMINATING)

    def test_terminated_is_final(self):
        for state in SupervisorState:
            assert not SupervisorState.TERMINATED.can_advance_to(state)


class TestSubordinateHandle:
    def test_unit_before_discovery_raises(self):
        handle = SubordinateHandle(pid=123)
        assert not handle.has_unit
        with pytest.raises(UnitNotDiscoveredError):
            handle.unit

    def test_unit_is_set_once(self):
        handle = SubordinateHandle(pid=123)
        assert handle.record_unit("a.service") is True
        assert handle.record_unit("b.service") is False
        assert handle.unit == "a.service"


# =============================================================================
# Full runs against the fake unit
# =============================================================================


class TestSupervisorRuns:
    @pytest.mark.asyncio
    async def test_healthy_run_stops_after_duration(self, settings, fake_session):
        settings = settings.model_copy(update={"duration": 1})
        fake_session.mode = ["live", UNIT, str(fake_session.pidfile)]
        supervisor, prober, echoed = make_supervisor(settings, fake_session)

        async with prober:
            code = await supervisor.run()

        assert code == 0
        assert supervisor.reason == TerminationReason.DURATION_ELAPSED
        assert supervisor.state == SupervisorState.TERMINATED
        assert supervisor.handle.unit == UNIT
        assert fake_session.followed == [UNIT]
        assert fake_session.stopped == [UNIT]
        assert supervisor.stop_requests == 1
        assert supervisor.kill_requests == 0
        assert prober.attempts >= 2
        assert echoed.index("early diagnostic line") < echoed.index("post-ready diagnostic line")

    @pytest.mark.asyncio
    async def test_failed_start_replays_buffered_lines_in_order(self, settings, fake_session):
        fake_session.mode = ["fail", UNIT, "line one", "line two", "line three"]
        supervisor, prober, echoed = make_supervisor(settings, fake_session)

        async with prober:
            code = await supervisor.run()

        assert code == 1
        assert supervisor.reason == TerminationReason.SUBORDINATE_ERRORED
        assert echoed[:5] == [
            "line one",
            "line two",
            "line three",
            f"journal for {UNIT}",
            f"status of {UNIT}",
        ]
        assert fake_session.inspected == [UNIT]
        assert fake_session.followed == []
        assert prober.attempts == 0

    @pytest.mark.asyncio
    async def test_failed_start_inspection_outlasts_exit_grace(self, settings, fake_session):
        """Inspection output of a failed unit is not cut short when the launcher exits."""
        settings = settings.model_copy(update={"exit_grace": 0.3})
        fake_session.mode = ["fail", UNIT, "line one"]
        fake_session.inspect_delay = 1.0
        supervisor, prober, echoed = make_supervisor(settings, fake_session)

        async with prober:
            code = await supervisor.run()

        assert code == 1
        assert supervisor.reason == TerminationReason.SUBORDINATE_ERRORED
        assert echoed[:3] == ["line one", f"journal for {UNIT}", f"status of {UNIT}"]
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_probe_failure_stops_unit_and_fails_run(self, settings, fake_session):
        fake_session.mode = ["live", UNIT, str(fake_session.pidfile)]
        supervisor, prober, echoed = make_supervisor(
            settings, fake_session, handler=metrics_handler(status_code=503)
        )

        async with prober:
            code = await supervisor.run()

        # The unit stops cleanly, but the probe failure fails the run.
        assert code == 1
        assert supervisor.reason == TerminationReason.PROBE_FAILED
        assert prober.attempts == 1
        assert fake_session.stopped == [UNIT]

    @pytest.mark.asyncio
    async def test_root_cancel_while_probing(self, settings, fake_session):
        fake_session.mode = ["live", UNIT, str(fake_session.pidfile)]
        root = CancellationToken("root")
        supervisor, prober, echoed = make_supervisor(settings, fake_session, root=root)

        order = []
        supervisor._probe_token.add_callback(lambda t: order.append("probe cancelled"))
        supervisor._follow_token.add_callback(lambda t: order.append("follower cancelled"))
        request_stop = supervisor._request_stop

        def record_stop(unit):
            order.append("stop requested")
            request_stop(unit)

        supervisor._request_stop = record_stop

        async with prober:
            run = asyncio.create_task(supervisor.run())
            await wait_until(lambda: prober.attempts >= 1)
            assert supervisor.state == SupervisorState.PROBING
            root.cancel("received SIGTERM")
            root.cancel("received SIGINT")
            code = await run

        assert code == 0
        assert supervisor.reason == TerminationReason.ROOT_CANCELLED
        assert order == ["probe cancelled", "follower cancelled", "stop requested"]
        attempts = prober.attempts
        await asyncio.sleep(settings.poll_interval * 3)
        assert prober.attempts == attempts

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, settings, fake_session):
        fake_session.mode = ["live", UNIT, str(fake_session.pidfile)]
        root = CancellationToken("root")
        supervisor, prober, echoed = make_supervisor(settings, fake_session, root=root)

        async with prober:
            run = asyncio.create_task(supervisor.run())
            await wait_until(lambda: supervisor.state == SupervisorState.PROBING)

            results = [
                supervisor.terminate(TerminationReason.PROBE_FAILED),
                supervisor.terminate(TerminationReason.ROOT_CANCELLED),
                supervisor.terminate(TerminationReason.DURATION_ELAPSED),
            ]
            root.cancel()
            code = await run

        assert results == [True, False, False]
        assert supervisor.reason == TerminationReason.PROBE_FAILED
        assert supervisor.stop_requests == 1
        assert fake_session.stopped == [UNIT]
        assert code == 1
        assert supervisor.terminate(TerminationReason.ROOT_CANCELLED) is False
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_root_cancel_before_ready_kills_process_tree(self, settings, fake_session):
        fake_session.mode = ["silent", str(fake_session.pidfile)]
        root = CancellationToken("root")
        supervisor, prober, echoed = make_supervisor(settings, fake_session, root=root)

        async with prober:
            run = asyncio.create_task(supervisor.run())
            await wait_until(lambda: fake_session.pidfile.exists())
            root.cancel("received SIGTERM")
            root.cancel("received SIGTERM")
            code = await run

        assert code == 128 + signal.SIGKILL
        assert supervisor.reason == TerminationReason.ROOT_CANCELLED
        assert supervisor.kill_requests == 1
        assert fake_session.stopped == []
        assert not supervisor.handle.has_unit

    @pytest.mark.asyncio
    async def test_subordinate_exit_before_ready(self, settings, fake_session):
        fake_session.mode = ["exit", "3", "pre one", "pre two"]
        supervisor, prober, echoed = make_supervisor(settings, fake_session)

        async with prober:
            code = await supervisor.run()

        assert code == 3
        assert supervisor.reason == TerminationReason.SUBORDINATE_EXITED
        assert echoed == ["pre one", "pre two"]
        assert supervisor.stop_requests == 0
        assert supervisor.kill_requests == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(self, settings, tmp_path):
        @dataclass
        class MissingLauncher(FakeSession):
            def launch_argv(self, service):
                return [str(tmp_path / "no-such-systemd-run")]

        supervisor, prober, echoed = make_supervisor(settings, MissingLauncher())

        async with prober:
            code = await supervisor.run()

        assert code == 1
        assert supervisor.reason == TerminationReason.SUBORDINATE_ERRORED
        assert supervisor.state == SupervisorState.TERMINATED
        assert supervisor.handle is None
