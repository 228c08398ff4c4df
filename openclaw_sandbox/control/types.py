"""Type definitions for the control plane's view of the sandbox runtime."""

from enum import StrEnum

from pydantic import BaseModel


class ProcessStatus(StrEnum):
    """Lifecycle status reported by the container runtime."""

    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    ERROR = "error"


class ProcessInfo(BaseModel):
    """Last-observed descriptor of a runtime-managed process."""

    id: str
    command: str
    status: ProcessStatus
    exit_code: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


class ProcessLogs(BaseModel):
    stdout: str = ""
    stderr: str = ""
