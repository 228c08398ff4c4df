"""Shared fixtures and fakes."""

import asyncio
from pathlib import Path

import pytest

from openclaw_sandbox.control.types import ProcessInfo, ProcessLogs
from openclaw_sandbox.sandbox.settings import SandboxPaths, SandboxSettings
from openclaw_sandbox.sandbox.types import CommandResult


class FakeClock:
    """Manually advanced clock for time-dependent loops."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuntime:
    """In-memory ``SandboxRuntime``."""

    def __init__(self, processes: list[ProcessInfo] | None = None):
        self.processes = list(processes or [])
        self.started: list[tuple[str, dict | None]] = []
        self.killed: list[str] = []
        self.list_calls = 0
        self.list_errors: list[Exception | None] = []
        self.start_errors: list[Exception] = []
        self.port_errors: dict[str, Exception] = {}
        self.port_waits: list[tuple[str, int, str, float]] = []
        self.logs: dict[str, ProcessLogs] = {}

    async def list_processes(self) -> list[ProcessInfo]:
        self.list_calls += 1
        if self.list_errors:
            error = self.list_errors.pop(0)
            if error is not None:
                raise error
        return list(self.processes)

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> ProcessInfo:
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.started.append((command, env))
        process = ProcessInfo(id=f"proc-{len(self.started)}", command=command, status="starting")
        self.processes.append(process)
        return process

    async def kill_process(self, process_id: str) -> None:
        self.killed.append(process_id)
        self.processes = [proc for proc in self.processes if proc.id != process_id]

    async def get_logs(self, process_id: str) -> ProcessLogs:
        return self.logs.get(process_id, ProcessLogs())

    async def wait_for_port(
        self, process_id: str, port: int, *, mode: str = "tcp", timeout: float
    ) -> None:
        self.port_waits.append((process_id, port, mode, timeout))
        error = self.port_errors.get(process_id)
        if error is not None:
            raise error


class FakeRclone:
    """Stand-in for ``RcloneClient`` backed by dictionaries."""

    def __init__(
        self,
        files: dict[str, dict[str, str]] | None = None,
        hang: set[str] | None = None,
        fail: set[str] | None = None,
    ):
        # prefix ("workspace/") -> {relative name: content}
        self.files = files or {}
        self.hang = hang or set()
        self.fail = fail or set()
        self.copies: list[tuple[str, Path]] = []
        self.syncs: list[tuple[Path, str, list[str] | None]] = []

    async def object_exists(self, key: str) -> bool:
        prefix, _, name = key.rpartition("/")
        return name in self.files.get(f"{prefix}/", {})

    async def list_files(self, prefix: str) -> list[str]:
        return [f"{len(content):>9} {name}" for name, content in self.files.get(prefix, {}).items()]

    async def copy_down(self, prefix: str, dest: Path) -> CommandResult:
        self.copies.append((prefix, dest))
        if prefix in self.hang:
            await asyncio.sleep(3600)
        dest.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.get(prefix, {}).items():
            (dest / name).write_text(content)
        return CommandResult(args=["rclone", "copy"], exit_code=1 if prefix in self.fail else 0)

    async def sync_up(
        self, source: Path, prefix: str, excludes: list[str] | None = None
    ) -> CommandResult:
        self.syncs.append((source, prefix, excludes))
        return CommandResult(args=["rclone", "sync"], exit_code=1 if prefix in self.fail else 0)


@pytest.fixture
def paths(tmp_path: Path) -> SandboxPaths:
    sandbox_paths = SandboxPaths.rooted_at(tmp_path)
    sandbox_paths.tmp_dir.mkdir(parents=True)
    sandbox_paths.config_dir.mkdir(parents=True)
    return sandbox_paths


@pytest.fixture
def settings() -> SandboxSettings:
    return SandboxSettings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
