"""Tests for the cold/warm start gate and the cold-start sequence."""

import asyncio
import json
import os
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from openclaw_sandbox.sandbox import commands
from openclaw_sandbox.sandbox.entrypoint import SandboxEntrypoint, find_gateway_pids
from openclaw_sandbox.sandbox.settings import SandboxSettings
from openclaw_sandbox.sandbox.supervisor import gateway_command
from openclaw_sandbox.sandbox.types import CommandResult, StartMode, StepResult


class CommandRecorder:
    """Replacement for ``run_command`` that records invocations."""

    def __init__(self, exit_code: int = 0):
        self.exit_code = exit_code
        self.calls: list[list[str]] = []

    async def __call__(self, args, timeout=None, env=None, cwd=None) -> CommandResult:
        self.calls.append(list(args))
        return CommandResult(args=list(args), exit_code=self.exit_code)

    def subcommands(self) -> list[str]:
        return [call[1] for call in self.calls]


@pytest.fixture
def recorder(monkeypatch) -> CommandRecorder:
    rec = CommandRecorder()
    monkeypatch.setattr(commands, "run_command", rec)
    return rec


def make_entrypoint(settings, paths, running: bool = False) -> SandboxEntrypoint:
    entry = SandboxEntrypoint(settings, paths=paths, environ={})
    entry.gateway_running = MagicMock(return_value=running)
    entry.supervisor.run_forever = AsyncMock()
    return entry


class TestStartGate:
    """Warm/cold detection."""

    @pytest.mark.asyncio
    async def test_already_running_is_noop(self, settings, paths, recorder):
        entry = make_entrypoint(settings, paths, running=True)

        assert await entry.run() == 0

        entry.supervisor.run_forever.assert_not_awaited()
        assert recorder.calls == []
        assert not paths.setup_marker.exists()

    @pytest.mark.asyncio
    async def test_marker_and_config_take_warm_path(self, settings, paths, recorder):
        paths.config_file.write_text("{}")
        paths.setup_marker.touch()
        entry = make_entrypoint(settings, paths)

        assert await entry.prepare() is StartMode.WARM
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_marker_without_config_is_cold(self, settings, paths, recorder):
        paths.setup_marker.touch()
        entry = make_entrypoint(settings, paths)

        assert await entry.prepare() is StartMode.COLD
        assert "onboard" in recorder.subcommands()

    @pytest.mark.asyncio
    async def test_config_without_marker_is_cold(self, settings, paths, recorder):
        paths.config_file.write_text("{}")
        entry = make_entrypoint(settings, paths)

        assert await entry.prepare() is StartMode.COLD
        # Existing config: onboarding skipped, doctor still runs.
        assert recorder.subcommands() == ["doctor"]

    @pytest.mark.asyncio
    async def test_exactly_one_cold_path_per_container(self, settings, paths, recorder):
        modes = []
        for _ in range(4):
            entry = make_entrypoint(settings, paths)
            modes.append(await entry.prepare())

        assert modes == [StartMode.COLD, StartMode.WARM, StartMode.WARM, StartMode.WARM]
        assert recorder.subcommands().count("onboard") == 1
        assert recorder.subcommands().count("doctor") == 1


class TestColdStart:
    """The best-effort setup sequence."""

    @pytest.mark.asyncio
    async def test_fresh_container_without_storage_or_credentials(
        self, settings, paths, recorder
    ):
        entry = make_entrypoint(settings, paths)

        await entry.run()

        onboard = next(call for call in recorder.calls if call[1] == "onboard")
        assert "--auth-choice" not in onboard
        config = json.loads(paths.config_file.read_text())
        assert config["gateway"]["port"] == 18789
        assert config["gateway"]["auth"]["token"] == "sandbox-internal-fallback"
        assert paths.setup_marker.exists()
        assert "18789" in gateway_command()
        entry.supervisor.run_forever.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_steps_do_not_abort_sequence(self, settings, paths, monkeypatch):
        monkeypatch.setattr(commands, "run_command", CommandRecorder(exit_code=1))
        entry = make_entrypoint(settings, paths)

        results = await entry.cold_start()

        failed = {result.name for result in results if not result.ok}
        assert {"onboard", "doctor"} <= failed
        assert paths.config_file.exists()
        assert paths.setup_marker.exists()

    @pytest.mark.asyncio
    async def test_step_exception_is_contained(self, settings, paths, recorder, monkeypatch):
        def explode(*_args):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr("openclaw_sandbox.sandbox.entrypoint.bootstrap_workspace", explode)
        entry = make_entrypoint(settings, paths)

        results = await entry.cold_start()

        bootstrap = next(result for result in results if result.name == "workspace_bootstrap")
        assert not bootstrap.ok
        assert "read-only filesystem" in bootstrap.warning
        assert paths.setup_marker.exists()

    @pytest.mark.asyncio
    async def test_storage_steps_only_with_credentials(self, paths, recorder):
        settings = SandboxSettings(
            r2_access_key_id="AKIA", r2_secret_access_key="secret", cf_account_id="acct"
        )
        entry = make_entrypoint(settings, paths)
        entry._restore = AsyncMock(return_value=[StepResult.success("restore.config")])
        entry._start_background_sync = MagicMock(
            return_value=StepResult.success("background_sync")
        )

        await entry.cold_start()

        entry._restore.assert_awaited_once()
        entry._start_background_sync.assert_called_once()

    @pytest.mark.asyncio
    async def test_storage_steps_skipped_without_credentials(self, settings, paths, recorder):
        entry = make_entrypoint(settings, paths)
        entry._restore = AsyncMock()
        entry._start_background_sync = MagicMock()

        await entry.cold_start()

        entry._restore.assert_not_awaited()
        entry._start_background_sync.assert_not_called()

    def test_marker_not_written_without_config(self, settings, paths):
        entry = make_entrypoint(settings, paths)
        result = entry.write_setup_marker()
        assert not result.ok
        assert not paths.setup_marker.exists()


class TestFindGatewayPids:
    """Process table scan used by the double-supervision guard."""

    def test_matches_gateway_cmdline_only(self, tmp_path):
        proc = tmp_path / "proc"
        for pid, cmdline in {
            "12": b"openclaw\x00gateway\x00--port\x0018789\x00",
            "13": b"openclaw\x00devices\x00list\x00",
            "14": b"python\x00-m\x00openclaw_sandbox.sandbox.entrypoint\x00",
            "99": b"openclaw\x00gateway\x00",
        }.items():
            (proc / pid).mkdir(parents=True)
            (proc / pid / "cmdline").write_bytes(cmdline)
        (proc / "self").mkdir()

        assert find_gateway_pids(proc, exclude_pid=99) == [12]

    def test_missing_proc_root(self, tmp_path):
        assert find_gateway_pids(tmp_path / "nope", exclude_pid=1) == []


R2_SETTINGS = dict(r2_access_key_id="AKIA", r2_secret_access_key="secret", cf_account_id="acct")


class TestWarmSync:
    """Background sync survives an entrypoint being replaced."""

    @pytest.mark.asyncio
    async def test_warm_path_starts_sync(self, paths, recorder, monkeypatch):
        monkeypatch.setattr(
            "openclaw_sandbox.sandbox.entrypoint.BackgroundSync.run_forever", AsyncMock()
        )
        paths.config_file.write_text("{}")
        paths.setup_marker.touch()
        entry = make_entrypoint(SandboxSettings(**R2_SETTINGS), paths)

        assert await entry.prepare() is StartMode.WARM

        assert entry._sync_task is not None
        await entry._sync_task
        entry.sync.run_forever.assert_awaited_once()
        assert paths.sync_pidfile.read_text() == str(os.getpid())
        assert paths.rclone_conf.exists()
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_warm_path_leaves_live_sync_alone(self, paths, recorder):
        paths.config_file.write_text("{}")
        paths.setup_marker.touch()
        paths.sync_pidfile.write_text(str(os.getppid()))
        entry = make_entrypoint(SandboxSettings(**R2_SETTINGS), paths)

        assert await entry.prepare() is StartMode.WARM

        assert entry._sync_task is None

    @pytest.mark.asyncio
    async def test_warm_path_without_storage_has_no_sync(self, settings, paths, recorder):
        paths.config_file.write_text("{}")
        paths.setup_marker.touch()
        entry = make_entrypoint(settings, paths)

        await entry.prepare()

        assert entry._sync_task is None
        assert not paths.sync_pidfile.exists()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_signal_stops_supervisor_and_gateway(self, settings, paths, recorder):
        paths.config_file.write_text("{}")
        paths.setup_marker.touch()
        entry = make_entrypoint(settings, paths)

        async def supervise_forever():
            await asyncio.sleep(3600)

        entry.supervisor.run_forever = supervise_forever
        entry.supervisor.shutdown = AsyncMock()

        running = asyncio.create_task(entry.run())
        await asyncio.sleep(0.05)
        await entry._handle_signal(signal.SIGTERM)

        assert await asyncio.wait_for(running, timeout=2) == 0
        entry.supervisor.shutdown.assert_awaited_once()
