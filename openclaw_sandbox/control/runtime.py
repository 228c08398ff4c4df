"""
Container runtime client.

The orchestrator only needs five primitives from the runtime hosting the
sandbox container: list processes, start a process, kill a process, read a
process's captured output, and wait for a TCP port to accept connections.
``SandboxRuntime`` names that contract; ``HttpSandboxRuntime`` speaks it over
the runtime's HTTP control API:

    GET    /api/processes               -> {"processes": [process, ...]}
    POST   /api/processes               {"command": str, "env": {...}} -> process
    GET    /api/processes/{id}          -> process
    DELETE /api/processes/{id}
    GET    /api/processes/{id}/logs     -> {"stdout": str, "stderr": str}

where ``process`` is ``{"id", "command", "status", "exitCode"}``.
"""

import asyncio
from typing import Any, Protocol

import httpx

from ..log_config import get_logger
from .types import ProcessInfo, ProcessLogs

# Message text the orchestrator recognises as a transient host-level reset.
CONNECTION_LOST = "Network connection lost"


class SandboxRuntimeError(Exception):
    """A runtime call failed. The message carries the runtime's error text."""

    pass


class PortWaitTimeout(SandboxRuntimeError):
    """The port did not accept connections before the deadline."""

    pass


class SandboxRuntime(Protocol):
    async def list_processes(self) -> list[ProcessInfo]: ...

    async def start_process(
        self, command: str, env: dict[str, str] | None = None
    ) -> ProcessInfo: ...

    async def kill_process(self, process_id: str) -> None: ...

    async def get_logs(self, process_id: str) -> ProcessLogs: ...

    async def wait_for_port(
        self, process_id: str, port: int, *, mode: str = "tcp", timeout: float
    ) -> None: ...


def _process_from_json(data: dict[str, Any]) -> ProcessInfo:
    return ProcessInfo(
        id=str(data["id"]),
        command=data.get("command", ""),
        status=data.get("status", "running"),
        exit_code=data.get("exitCode"),
    )


class HttpSandboxRuntime:
    """``SandboxRuntime`` over the container runtime's HTTP API."""

    HTTP_TIMEOUT = 30.0
    PROBE_CONNECT_TIMEOUT = 2.0
    PROBE_INTERVAL = 0.5

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        probe_host: str = "localhost",
        client: httpx.AsyncClient | None = None,
        probe_client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(self.HTTP_TIMEOUT),
        )
        # Gateway probes must not carry the runtime credentials.
        self.probe_client = probe_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.PROBE_CONNECT_TIMEOUT)
        )
        self.probe_host = probe_host
        self.log = get_logger("runtime", service="control")

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.probe_client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise SandboxRuntimeError(f"{CONNECTION_LOST}: {e}") from e

        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise SandboxRuntimeError(
                f"Runtime {method} {path} failed ({response.status_code}): {detail}"
            )
        return response

    async def list_processes(self) -> list[ProcessInfo]:
        response = await self._request("GET", "/api/processes")
        return [_process_from_json(item) for item in response.json().get("processes", [])]

    async def get_process(self, process_id: str) -> ProcessInfo:
        response = await self._request("GET", f"/api/processes/{process_id}")
        return _process_from_json(response.json())

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> ProcessInfo:
        body: dict[str, Any] = {"command": command}
        if env:
            body["env"] = env
        response = await self._request("POST", "/api/processes", json=body)
        return _process_from_json(response.json())

    async def kill_process(self, process_id: str) -> None:
        await self._request("DELETE", f"/api/processes/{process_id}")

    async def get_logs(self, process_id: str) -> ProcessLogs:
        response = await self._request("GET", f"/api/processes/{process_id}/logs")
        data = response.json()
        return ProcessLogs(stdout=data.get("stdout") or "", stderr=data.get("stderr") or "")

    async def _probe(self, port: int, mode: str) -> bool:
        if mode == "http":
            try:
                await self.probe_client.get(f"http://{self.probe_host}:{port}/")
            except httpx.TransportError:
                return False
            return True

        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, port),
                timeout=self.PROBE_CONNECT_TIMEOUT,
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        await writer.wait_closed()
        return True

    async def wait_for_port(
        self, process_id: str, port: int, *, mode: str = "tcp", timeout: float
    ) -> None:
        """
        Poll until ``port`` answers, the process fails, or ``timeout`` elapses.

        A clean exit (code 0) is not a failure: the startup command exits 0
        when a gateway is already running. The deadline bounds the whole
        wait, including runtime calls.
        """
        try:
            async with asyncio.timeout(timeout):
                while True:
                    process = await self.get_process(process_id)
                    if not process.is_active and process.exit_code != 0:
                        raise SandboxRuntimeError(
                            f"Process {process_id} {process.status.value} "
                            f"(exit code {process.exit_code}) before port {port} opened"
                        )
                    if await self._probe(port, mode):
                        return
                    await asyncio.sleep(self.PROBE_INTERVAL)
        except TimeoutError as e:
            raise PortWaitTimeout(f"Port {port} not reachable after {timeout:.0f}s") from e
