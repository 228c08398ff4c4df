"""Type definitions for the in-container entrypoint."""

from enum import StrEnum

from pydantic import BaseModel


class StartMode(StrEnum):
    """How the entrypoint decided to bring the gateway up."""

    ALREADY_RUNNING = "already_running"
    WARM = "warm"
    COLD = "cold"


class CommandResult(BaseModel):
    """Outcome of a bounded external command."""

    args: list[str]
    exit_code: int | None = None
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def output_tail(self, lines: int = 50) -> str:
        return "\n".join(self.output.splitlines()[-lines:])


class StepResult(BaseModel):
    """Outcome of one best-effort setup step."""

    name: str
    ok: bool
    warning: str | None = None

    @classmethod
    def success(cls, name: str) -> "StepResult":
        return cls(name=name, ok=True)

    @classmethod
    def failure(cls, name: str, warning: str) -> "StepResult":
        return cls(name=name, ok=False, warning=warning)
