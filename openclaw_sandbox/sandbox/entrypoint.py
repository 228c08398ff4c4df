#!/usr/bin/env python3
"""
Sandbox entrypoint - restores state and keeps the OpenClaw gateway alive.

Invoked by the control plane (possibly many times per container). Responsibilities:
1. Exit immediately if a gateway is already running (no double supervision)
2. Warm restart: setup marker and config both present -> make sure background
   sync is running, then straight to supervisor
3. Cold start: restore from R2, onboard, patch config, bootstrap workspace,
   start background sync, run doctor; every step best-effort
4. Write the setup marker and hand off to the supervisor loop, which runs until
   SIGTERM/SIGINT; shutdown terminates the gateway child before exiting
"""

import asyncio
import os
import signal
import sys
import time
from collections.abc import Mapping
from pathlib import Path

from ..log_config import configure_logging, get_logger
from .bootstrap import bootstrap_workspace, dump_config, remove_config_locks
from .config_patch import apply_config_patch
from .doctor import run_doctor
from .onboard import run_onboard
from .rclone import RcloneClient
from .restore import StateRestorer
from .settings import SandboxPaths, SandboxSettings
from .steps import SetupRunner
from .supervisor import GatewaySupervisor
from .sync import BackgroundSync, sync_owner_alive
from .types import StartMode, StepResult

configure_logging()

GATEWAY_SIGNATURE = "openclaw gateway"


def find_gateway_pids(proc_root: Path = Path("/proc"), exclude_pid: int | None = None) -> list[int]:
    """
    PIDs whose command line contains the gateway invocation.

    Reads ``/proc/<pid>/cmdline`` directly rather than shelling out to pgrep,
    which would match its own command line.
    """
    exclude_pid = os.getpid() if exclude_pid is None else exclude_pid
    pids = []
    try:
        entries = list(proc_root.iterdir())
    except OSError:
        return []

    for entry in entries:
        if not entry.name.isdigit() or int(entry.name) == exclude_pid:
            continue
        try:
            raw = (entry / "cmdline").read_bytes()
        except OSError:
            continue
        cmdline = raw.replace(b"\x00", b" ").decode(errors="replace").strip()
        if GATEWAY_SIGNATURE in cmdline:
            pids.append(int(entry.name))
    return sorted(pids)


class SandboxEntrypoint:
    """Cold/warm start gate in front of the gateway supervisor."""

    def __init__(
        self,
        settings: SandboxSettings,
        paths: SandboxPaths | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.settings = settings
        self.paths = paths or SandboxPaths()
        self.environ = dict(os.environ if environ is None else environ)
        self.rclone = RcloneClient(settings, self.paths)
        self.supervisor = GatewaySupervisor(
            self.paths, environ=self.environ, dev_mode=settings.dev_mode
        )
        self.sync: BackgroundSync | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self.shutdown_event = asyncio.Event()
        self.log = get_logger(
            "entrypoint",
            service="sandbox",
            bucket=settings.r2_bucket_name if settings.r2_configured else None,
        )

    def gateway_running(self) -> bool:
        return bool(find_gateway_pids())

    def is_warm(self) -> bool:
        # Both must be re-checked: a surviving marker without config means cold.
        return self.paths.setup_marker.is_file() and self.paths.config_file.is_file()

    def write_setup_marker(self) -> StepResult:
        if not self.paths.config_file.is_file():
            return StepResult.failure("setup_marker", "config missing, marker not written")
        self.paths.tmp_dir.mkdir(parents=True, exist_ok=True)
        self.paths.setup_marker.touch()
        return StepResult.success("setup_marker")

    async def _restore(self) -> list[StepResult]:
        self.rclone.write_config()
        return await StateRestorer(self.rclone, self.paths).restore_all()

    def _start_background_sync(self) -> StepResult:
        """Start the sync loop unless this or another live process already runs one."""
        if self._sync_task is not None or sync_owner_alive(self.paths.sync_pidfile):
            self.log.info("sync.already_running")
            return StepResult.success("background_sync")

        if not self.paths.rclone_flag.exists():
            self.rclone.write_config()
        self.paths.tmp_dir.mkdir(parents=True, exist_ok=True)
        self.paths.sync_pidfile.write_text(str(os.getpid()))
        self.sync = BackgroundSync(self.rclone, self.paths)
        self._sync_task = asyncio.create_task(self.sync.run_forever())
        return StepResult.success("background_sync")

    async def cold_start(self) -> list[StepResult]:
        """Run the full setup sequence. Never raises for a failed step."""
        start = time.time()
        runner = SetupRunner(self.log)
        self.log.info("entrypoint.cold_start", r2_configured=self.settings.r2_configured)

        self.paths.config_dir.mkdir(parents=True, exist_ok=True)

        if self.settings.r2_configured:
            await runner.run("restore", self._restore)
        else:
            self.log.info("restore.skip", reason="r2_not_configured")

        await runner.run("onboard", lambda: run_onboard(self.settings, self.paths))
        await runner.run("config_patch", lambda: apply_config_patch(self.settings, self.paths))
        await runner.run("workspace_bootstrap", lambda: bootstrap_workspace(self.paths))

        if self.settings.r2_configured:
            await runner.run("background_sync", self._start_background_sync)

        await runner.run("doctor", lambda: run_doctor(self.settings, self.paths))
        await runner.run("lock_cleanup", lambda: remove_config_locks(self.paths))
        await runner.run("config_dump", lambda: dump_config(self.paths))
        await runner.run("setup_marker", self.write_setup_marker)

        self.log.info(
            "sandbox.cold_start",
            duration_ms=int((time.time() - start) * 1000),
            failed_steps=[result.name for result in runner.failed],
            outcome="success" if not runner.failed else "degraded",
        )
        return runner.results

    async def prepare(self) -> StartMode:
        """Decide the start mode and run setup when needed."""
        if self.gateway_running():
            self.log.info("entrypoint.already_running")
            return StartMode.ALREADY_RUNNING

        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        if self.is_warm():
            self.log.info("entrypoint.warm_restart")
            # The previous entrypoint may have been killed, taking its sync loop along.
            if self.settings.r2_configured:
                await SetupRunner(self.log).run("background_sync", self._start_background_sync)
            return StartMode.WARM

        await self.cold_start()
        return StartMode.COLD

    async def run(self) -> int:
        mode = await self.prepare()
        if mode is StartMode.ALREADY_RUNNING:
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._handle_signal(s)))

        supervise = asyncio.create_task(self.supervisor.run_forever())
        stopped = asyncio.create_task(self.shutdown_event.wait())
        try:
            await asyncio.wait({supervise, stopped}, return_when=asyncio.FIRST_COMPLETED)
            if supervise.done():
                supervise.result()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.shutdown(supervise, stopped)
        return 0

    async def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signal."""
        self.log.info("entrypoint.signal", signal_name=sig.name)
        self.shutdown_event.set()

    async def shutdown(self, *tasks: asyncio.Task) -> None:
        """Stop the supervisor loop and sync loop, then take down the gateway child."""
        self.log.info("entrypoint.shutdown_start")
        pending = [task for task in (*tasks, self._sync_task) if task is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.supervisor.shutdown()
        self.log.info("entrypoint.shutdown_complete")


async def main() -> int:
    """Entry point for the sandbox startup script."""
    entrypoint = SandboxEntrypoint(SandboxSettings.from_env(os.environ))
    return await entrypoint.run()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
