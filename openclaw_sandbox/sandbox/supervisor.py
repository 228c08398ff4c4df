"""
In-container gateway supervisor.

Keeps ``openclaw gateway`` running forever: clear stale locks, launch, wait
for exit, classify the exit, back off, repeat. There is no give-up state.
The loop stops only when the container is destroyed or the entrypoint is
signalled, and in that case ``shutdown`` takes the gateway child down with it.
"""

import asyncio
import contextlib
import os
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from ..log_config import get_logger
from .settings import GATEWAY_PORT, SandboxPaths

# Auth is enforced in front of the container; the gateway must not turn on
# token auth just because this variable is inherited.
STRIPPED_ENV_VARS = ("OPENCLAW_GATEWAY_TOKEN",)
GATEWAY_STOP_TIMEOUT_SECONDS = 10.0


def gateway_command() -> list[str]:
    return [
        "openclaw",
        "gateway",
        "--port",
        str(GATEWAY_PORT),
        "--verbose",
        "--allow-unconfigured",
        "--bind",
        "lan",
    ]


@dataclass
class CrashWindow:
    """
    Rapid-crash accounting for one supervisor lifetime.

    A run shorter than ``window`` seconds counts as a rapid crash; a longer
    run resets the counter. Once ``threshold`` rapid crashes accumulate the
    restart delay grows by ``backoff_step`` per crash up to ``backoff_max``.
    """

    window: float = 30.0
    threshold: int = 5
    restart_delay: float = 3.0
    backoff_step: float = 10.0
    backoff_max: float = 120.0
    rapid_crashes: int = 0
    last_start: float = 0.0

    def started(self, now: float) -> None:
        self.last_start = now

    def exited(self, now: float) -> float:
        """Record an exit and return how long to wait before the next start."""
        elapsed = now - self.last_start
        if elapsed < self.window:
            self.rapid_crashes += 1
        else:
            self.rapid_crashes = 0
        return self.next_delay()

    def next_delay(self) -> float:
        if self.rapid_crashes >= self.threshold:
            return min(self.rapid_crashes * self.backoff_step, self.backoff_max)
        return self.restart_delay

    @property
    def in_crash_loop(self) -> bool:
        return self.rapid_crashes >= self.threshold


class GatewaySupervisor:
    """Restart-forever loop around the gateway executable."""

    def __init__(
        self,
        paths: SandboxPaths,
        environ: Mapping[str, str] | None = None,
        dev_mode: bool = False,
        crash_window: CrashWindow | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.paths = paths
        self.environ = dict(os.environ if environ is None else environ)
        self.dev_mode = dev_mode
        self.crash_window = crash_window or CrashWindow()
        self._clock = clock
        self._sleep = sleep
        self.attempts = 0
        self._process: asyncio.subprocess.Process | None = None
        self.log = get_logger("supervisor", service="sandbox")

    def gateway_env(self) -> dict[str, str]:
        return {key: value for key, value in self.environ.items() if key not in STRIPPED_ENV_VARS}

    def clear_locks(self) -> None:
        for lock in self.paths.lock_files:
            with contextlib.suppress(FileNotFoundError):
                lock.unlink()

    async def _run_gateway(self) -> int:
        self._process = await asyncio.create_subprocess_exec(
            *gateway_command(),
            env=self.gateway_env(),
        )
        return await self._process.wait()

    async def run_once(self) -> float:
        """Start the gateway, block until it exits, and return the restart delay."""
        self.clear_locks()
        self.attempts += 1
        self.crash_window.started(self._clock())
        self.log.info("supervisor.gateway_start", attempt=self.attempts, port=GATEWAY_PORT)

        try:
            exit_code = await self._run_gateway()
        except OSError as e:
            self.log.error("supervisor.gateway_launch_error", exc=e, attempt=self.attempts)
            exit_code = None

        now = self._clock()
        ran_for = now - self.crash_window.last_start
        delay = self.crash_window.exited(now)
        self.log.info(
            "supervisor.gateway_exit",
            exit_code=exit_code,
            ran_for_s=round(ran_for, 1),
            rapid_crashes=self.crash_window.rapid_crashes,
        )

        if self.crash_window.in_crash_loop:
            self.log.warn(
                "supervisor.crash_loop",
                rapid_crashes=self.crash_window.rapid_crashes,
                delay_s=delay,
            )
        else:
            self.log.info("supervisor.restart", delay_s=delay)
        return delay

    async def run_forever(self) -> None:
        self.log.info("supervisor.start", port=GATEWAY_PORT, dev_mode=self.dev_mode)
        while True:
            delay = await self.run_once()
            await self._sleep(delay)

    async def shutdown(self, timeout: float = GATEWAY_STOP_TIMEOUT_SECONDS) -> None:
        """Terminate the gateway child, killing it if it outlives ``timeout``."""
        process = self._process
        if process is None or process.returncode is not None:
            return

        self.log.info("supervisor.shutdown_start", pid=process.pid)
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
        self.log.info("supervisor.shutdown_complete", exit_code=process.returncode)
