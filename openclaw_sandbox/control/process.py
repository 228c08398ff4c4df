"""
Gateway reconciliation for the control plane.

``GatewayOrchestrator.ensure_gateway`` is called once per inbound request and
converges on exactly one reachable gateway: reuse a healthy process, replace
a stuck one, or start the startup entrypoint in a fresh container. Transient
host resets are retried; everything else surfaces to the caller.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable

from ..log_config import get_logger
from .runtime import CONNECTION_LOST, SandboxRuntime
from .types import ProcessInfo

GATEWAY_PORT = 18789
STARTUP_COMMAND = "start-openclaw"

GATEWAY_SIGNATURES = (
    "start-openclaw",
    "openclaw gateway",
    # Legacy names kept while old containers drain.
    "start-moltbot.sh",
    "clawdbot gateway",
)
CLI_SIGNATURES = (
    "openclaw devices",
    "openclaw --version",
    "openclaw onboard",
    "clawdbot devices",
    "clawdbot --version",
)
HOST_RESET_MARKERS = ("Durable Object reset", CONNECTION_LOST)


class GatewayStartupError(Exception):
    """A freshly started gateway never became reachable."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def is_host_reset(error: BaseException) -> bool:
    message = str(error)
    return any(marker in message for marker in HOST_RESET_MARKERS)


def is_gateway_process(command: str) -> bool:
    """Match the startup script or gateway, never CLI subcommands sharing the name."""
    if any(signature in command for signature in CLI_SIGNATURES):
        return False
    return any(signature in command for signature in GATEWAY_SIGNATURES)


class ProcessCache:
    """Last process-table lookup result, trusted for ``ttl`` seconds."""

    def __init__(self, ttl: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._value: ProcessInfo | None = None
        self._stored_at: float | None = None

    def get(self) -> tuple[bool, ProcessInfo | None]:
        """Return ``(hit, value)``. Absence and inactive processes are never hits."""
        if self._stored_at is None or self._clock() - self._stored_at >= self.ttl:
            return False, None
        if self._value is None or not self._value.is_active:
            self.invalidate()
            return False, None
        return True, self._value

    def put(self, value: ProcessInfo | None) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None


class GatewayOrchestrator:
    """Reuse, replace or start the sandbox gateway."""

    EXISTING_PROCESS_TIMEOUT = 15.0
    STARTUP_TIMEOUT = 180.0
    EARLY_LOG_DELAY = 20.0
    HOST_RESET_RETRY_DELAY = 5.0
    HOST_RESET_MAX_RETRIES = 3

    def __init__(
        self,
        runtime: SandboxRuntime,
        env_vars: dict[str, str] | None = None,
        cache: ProcessCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.runtime = runtime
        self.env_vars = dict(env_vars or {})
        self.cache = cache or ProcessCache()
        self._sleep = sleep
        # Serialises reconciliation so concurrent callers never both start a gateway.
        self._lock = asyncio.Lock()
        self.log = get_logger("orchestrator", service="control")

    async def find_existing_gateway(self) -> ProcessInfo | None:
        hit, cached = self.cache.get()
        if hit:
            return cached

        try:
            processes = await self.runtime.list_processes()
        except Exception as e:
            self.log.warn("gateway.list_error", exc=e)
            if is_host_reset(e):
                raise
            processes = []

        found = next(
            (proc for proc in processes if is_gateway_process(proc.command) and proc.is_active),
            None,
        )
        self.cache.put(found)
        return found

    async def ensure_gateway(self) -> ProcessInfo:
        """Return a reachable gateway process, retrying through host resets."""
        for attempt in range(self.HOST_RESET_MAX_RETRIES + 1):
            try:
                async with self._lock:
                    return await self._ensure_gateway_once()
            except Exception as e:
                if is_host_reset(e) and attempt < self.HOST_RESET_MAX_RETRIES:
                    self.log.warn(
                        "gateway.host_reset",
                        attempt=attempt + 1,
                        max_retries=self.HOST_RESET_MAX_RETRIES,
                        delay_s=self.HOST_RESET_RETRY_DELAY,
                        exc=e,
                    )
                    await self._sleep(self.HOST_RESET_RETRY_DELAY)
                    continue
                raise
        raise RuntimeError("Exhausted host reset retries")

    async def restart_gateway(self) -> ProcessInfo:
        """Kill every matching process, then ensure a fresh gateway."""
        for proc in await self.runtime.list_processes():
            if is_gateway_process(proc.command) and proc.is_active:
                await self._kill(proc)
        self.cache.invalidate()
        return await self.ensure_gateway()

    async def _kill(self, proc: ProcessInfo) -> None:
        try:
            await self.runtime.kill_process(proc.id)
        except Exception as e:
            self.log.warn("gateway.kill_error", process_id=proc.id, exc=e)
            if is_host_reset(e):
                raise
        finally:
            self.cache.invalidate()

    async def _reuse_existing(self, existing: ProcessInfo) -> bool:
        """Short liveness probe; kills the process when it does not answer."""
        self.log.info(
            "gateway.existing_probe",
            process_id=existing.id,
            status=existing.status.value,
            timeout_s=self.EXISTING_PROCESS_TIMEOUT,
        )
        try:
            await self.runtime.wait_for_port(
                existing.id, GATEWAY_PORT, mode="tcp", timeout=self.EXISTING_PROCESS_TIMEOUT
            )
        except Exception as e:
            if is_host_reset(e):
                raise
            self.log.warn("gateway.existing_unreachable", process_id=existing.id, exc=e)
            await self._kill(existing)
            return False

        self.log.info("gateway.reuse", process_id=existing.id)
        return True

    async def _dump_early_logs(self, process_id: str) -> None:
        await asyncio.sleep(self.EARLY_LOG_DELAY)
        # The process may already be gone; nothing to report then.
        with contextlib.suppress(Exception):
            logs = await self.runtime.get_logs(process_id)
            self.log.info(
                "gateway.early_logs", process_id=process_id, stdout=logs.stdout, stderr=logs.stderr
            )

    async def _start_new(self) -> ProcessInfo:
        self.log.info(
            "gateway.start", command=STARTUP_COMMAND, env_keys=sorted(self.env_vars.keys())
        )
        try:
            process = await self.runtime.start_process(STARTUP_COMMAND, env=self.env_vars or None)
        except Exception as e:
            self.log.error("gateway.start_error", exc=e)
            raise
        finally:
            self.cache.invalidate()
        log = self.log.bind(process_id=process.id)
        log.info("gateway.started", status=process.status.value)

        early_logs = asyncio.create_task(self._dump_early_logs(process.id))
        try:
            await self.runtime.wait_for_port(
                process.id, GATEWAY_PORT, mode="tcp", timeout=self.STARTUP_TIMEOUT
            )
        except Exception as e:
            log.error("gateway.wait_error", exc=e)
            if is_host_reset(e):
                raise
            try:
                logs = await self.runtime.get_logs(process.id)
            except Exception as log_error:
                if is_host_reset(log_error):
                    raise log_error from e
                log.error("gateway.logs_error", exc=log_error)
                raise e
            raise GatewayStartupError(
                f"OpenClaw gateway failed to start. Stderr: {logs.stderr or '(empty)'}",
                stdout=logs.stdout,
                stderr=logs.stderr,
            ) from e
        finally:
            early_logs.cancel()

        log.info("gateway.ready")
        with contextlib.suppress(Exception):
            logs = await self.runtime.get_logs(process.id)
            log.debug("gateway.startup_logs", stdout=logs.stdout, stderr=logs.stderr)
        return process

    async def _ensure_gateway_once(self) -> ProcessInfo:
        existing = await self.find_existing_gateway()
        if existing and await self._reuse_existing(existing):
            return existing
        return await self._start_new()
