"""Tests for the in-container gateway supervisor loop."""

import asyncio
import signal
from unittest.mock import AsyncMock

import pytest

from openclaw_sandbox.sandbox.supervisor import CrashWindow, GatewaySupervisor, gateway_command
from tests.conftest import FakeClock


class StopLoop(Exception):
    pass


def make_supervisor(paths, clock: FakeClock, run_durations: list[float], **kwargs):
    """Supervisor whose gateway 'runs' for the given durations, in order."""
    supervisor = GatewaySupervisor(paths, environ=kwargs.pop("environ", {}), clock=clock, **kwargs)
    durations = list(run_durations)

    async def fake_run_gateway() -> int:
        clock.advance(durations.pop(0))
        return 1

    supervisor._run_gateway = fake_run_gateway
    return supervisor


class TestCrashWindow:
    """Rapid-crash classification and backoff."""

    def test_short_delay_below_threshold(self):
        window = CrashWindow()
        delays = []
        for _ in range(4):
            window.started(0.0)
            delays.append(window.exited(5.0))
        assert delays == [3.0, 3.0, 3.0, 3.0]
        assert window.rapid_crashes == 4
        assert not window.in_crash_loop

    def test_backoff_grows_from_threshold(self):
        window = CrashWindow()
        delays = []
        for _ in range(8):
            window.started(0.0)
            delays.append(window.exited(1.0))
        assert delays == [3.0, 3.0, 3.0, 3.0, 50.0, 60.0, 70.0, 80.0]

    def test_backoff_is_capped(self):
        window = CrashWindow()
        for _ in range(20):
            window.started(0.0)
            delay = window.exited(1.0)
        assert delay == 120.0

    def test_long_run_resets_counter(self):
        window = CrashWindow()
        for _ in range(6):
            window.started(0.0)
            window.exited(1.0)
        assert window.in_crash_loop

        window.started(100.0)
        assert window.exited(130.0) == 3.0
        assert window.rapid_crashes == 0

    def test_exactly_window_is_not_rapid(self):
        window = CrashWindow()
        window.started(0.0)
        window.exited(30.0)
        assert window.rapid_crashes == 0


class TestGatewaySupervisor:
    """One supervised start/exit cycle and the forever loop."""

    def test_gateway_command_flags(self):
        assert gateway_command() == [
            "openclaw",
            "gateway",
            "--port",
            "18789",
            "--verbose",
            "--allow-unconfigured",
            "--bind",
            "lan",
        ]

    def test_gateway_env_strips_token(self, paths):
        supervisor = GatewaySupervisor(
            paths, environ={"OPENCLAW_GATEWAY_TOKEN": "leak", "ANTHROPIC_API_KEY": "sk"}
        )
        env = supervisor.gateway_env()
        assert "OPENCLAW_GATEWAY_TOKEN" not in env
        assert env["ANTHROPIC_API_KEY"] == "sk"

    @pytest.mark.asyncio
    async def test_run_once_clears_stale_locks(self, paths, clock):
        for lock in paths.lock_files:
            lock.write_text("pid")
        supervisor = make_supervisor(paths, clock, [60.0])

        await supervisor.run_once()

        assert not any(lock.exists() for lock in paths.lock_files)

    @pytest.mark.asyncio
    async def test_run_once_returns_short_delay_after_long_run(self, paths, clock):
        supervisor = make_supervisor(paths, clock, [300.0])
        assert await supervisor.run_once() == 3.0
        assert supervisor.attempts == 1

    @pytest.mark.asyncio
    async def test_launch_failure_counts_as_rapid_crash(self, paths, clock):
        supervisor = GatewaySupervisor(paths, environ={}, clock=clock)
        supervisor._run_gateway = AsyncMock(side_effect=FileNotFoundError("openclaw"))

        for _ in range(5):
            delay = await supervisor.run_once()

        assert supervisor.crash_window.rapid_crashes == 5
        assert delay == 50.0

    @pytest.mark.asyncio
    async def test_run_forever_sleeps_with_escalating_backoff(self, paths, clock):
        sleep = AsyncMock(side_effect=[None] * 6 + [StopLoop()])
        supervisor = make_supervisor(paths, clock, [2.0] * 6 + [45.0], sleep=sleep)

        with pytest.raises(StopLoop):
            await supervisor.run_forever()

        assert [c.args[0] for c in sleep.await_args_list] == [
            3.0,
            3.0,
            3.0,
            3.0,
            50.0,
            60.0,
            3.0,
        ]
        assert supervisor.attempts == 7


class TestShutdown:
    """The gateway child never outlives the supervisor."""

    @pytest.mark.asyncio
    async def test_terminates_running_gateway(self, paths):
        supervisor = GatewaySupervisor(paths, environ={})
        supervisor._process = await asyncio.create_subprocess_exec("sleep", "30")

        await supervisor.shutdown(timeout=5)

        assert supervisor._process.returncode == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_kills_gateway_ignoring_terminate(self, paths):
        supervisor = GatewaySupervisor(paths, environ={})
        supervisor._process = await asyncio.create_subprocess_exec(
            "sh", "-c", "trap '' TERM; while true; do sleep 0.1; done"
        )
        await asyncio.sleep(0.3)

        await supervisor.shutdown(timeout=0.2)

        assert supervisor._process.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_nothing_to_stop(self, paths):
        supervisor = GatewaySupervisor(paths, environ={})
        await supervisor.shutdown()
        assert supervisor._process is None
