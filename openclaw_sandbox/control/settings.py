"""Control-plane configuration, read once at process start."""

from collections.abc import Mapping

from pydantic import BaseModel, field_validator


class ControlSettings(BaseModel):
    runtime_url: str = "http://localhost:3000"
    runtime_token: str | None = None
    probe_host: str = "localhost"
    api_token: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("runtime_token", "api_token", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "ControlSettings":
        defaults = cls()
        return cls(
            runtime_url=environ.get("SANDBOX_RUNTIME_URL") or defaults.runtime_url,
            runtime_token=environ.get("SANDBOX_RUNTIME_TOKEN"),
            probe_host=environ.get("SANDBOX_PROBE_HOST") or defaults.probe_host,
            api_token=environ.get("CONTROL_API_TOKEN"),
            host=environ.get("CONTROL_HOST") or defaults.host,
            port=environ.get("CONTROL_PORT") or defaults.port,
        )
