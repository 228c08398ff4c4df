"""
Entrypoint configuration.

All environment variables the container reads are collected here, once, at
the entrypoint boundary. Everything below the entrypoint receives a
``SandboxSettings`` / ``SandboxPaths`` value instead of touching ``os.environ``.
"""

from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, field_validator

GATEWAY_PORT = 18789
DEFAULT_BUCKET = "moltbot-data"


class SandboxPaths(BaseModel):
    """Fixed filesystem locations used by setup, sync and the supervisor."""

    config_dir: Path = Path("/root/.openclaw")
    workspace_dir: Path = Path("/root/clawd")
    bootstrap_dir: Path = Path("/root/workspace-bootstrap")
    rclone_conf: Path = Path("/root/.config/rclone/rclone.conf")
    tmp_dir: Path = Path("/tmp")

    @classmethod
    def rooted_at(cls, root: Path) -> "SandboxPaths":
        """Lay out every path under ``root`` (used by tests and local runs)."""
        return cls(
            config_dir=root / ".openclaw",
            workspace_dir=root / "clawd",
            bootstrap_dir=root / "workspace-bootstrap",
            rclone_conf=root / ".config" / "rclone" / "rclone.conf",
            tmp_dir=root / "tmp",
        )

    @property
    def config_file(self) -> Path:
        return self.config_dir / "openclaw.json"

    @property
    def skills_dir(self) -> Path:
        return self.workspace_dir / "skills"

    @property
    def setup_marker(self) -> Path:
        return self.tmp_dir / ".openclaw-setup-done"

    @property
    def rclone_flag(self) -> Path:
        return self.tmp_dir / ".rclone-configured"

    @property
    def sync_marker(self) -> Path:
        return self.tmp_dir / ".last-sync-marker"

    @property
    def last_sync_file(self) -> Path:
        return self.tmp_dir / ".last-sync"

    @property
    def sync_log(self) -> Path:
        return self.tmp_dir / "r2-sync.log"

    @property
    def sync_pidfile(self) -> Path:
        return self.tmp_dir / ".r2-sync.pid"

    @property
    def lock_files(self) -> tuple[Path, Path]:
        return (self.tmp_dir / "openclaw-gateway.lock", self.config_dir / "gateway.lock")


class SandboxSettings(BaseModel):
    """Validated view of the environment handed to the startup entrypoint."""

    # Remote storage (R2 via rclone)
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    cf_account_id: str | None = None
    r2_bucket_name: str = DEFAULT_BUCKET

    # AI providers
    cloudflare_ai_gateway_api_key: str | None = None
    cf_ai_gateway_account_id: str | None = None
    cf_ai_gateway_gateway_id: str | None = None
    cf_ai_gateway_model: str | None = None
    anthropic_api_key: str | None = None
    openai_api_key: str | None = None

    # Gateway
    sandbox_gateway_token: str | None = None
    dev_mode: bool = False

    # Chat channels
    telegram_bot_token: str | None = None
    telegram_dm_policy: str | None = None
    telegram_dm_allow_from: str | None = None
    discord_bot_token: str | None = None
    discord_dm_policy: str | None = None
    slack_bot_token: str | None = None
    slack_app_token: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("r2_bucket_name", mode="before")
    @classmethod
    def _default_bucket(cls, value):
        return value or DEFAULT_BUCKET

    @field_validator("dev_mode", mode="before")
    @classmethod
    def _parse_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "SandboxSettings":
        return cls(
            r2_access_key_id=environ.get("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=environ.get("R2_SECRET_ACCESS_KEY"),
            cf_account_id=environ.get("CF_ACCOUNT_ID"),
            r2_bucket_name=environ.get("R2_BUCKET_NAME"),
            cloudflare_ai_gateway_api_key=environ.get("CLOUDFLARE_AI_GATEWAY_API_KEY"),
            cf_ai_gateway_account_id=environ.get("CF_AI_GATEWAY_ACCOUNT_ID"),
            cf_ai_gateway_gateway_id=environ.get("CF_AI_GATEWAY_GATEWAY_ID"),
            cf_ai_gateway_model=environ.get("CF_AI_GATEWAY_MODEL"),
            anthropic_api_key=environ.get("ANTHROPIC_API_KEY"),
            openai_api_key=environ.get("OPENAI_API_KEY"),
            sandbox_gateway_token=environ.get("SANDBOX_GATEWAY_TOKEN"),
            dev_mode=environ.get("OPENCLAW_DEV_MODE", False),
            telegram_bot_token=environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_dm_policy=environ.get("TELEGRAM_DM_POLICY"),
            telegram_dm_allow_from=environ.get("TELEGRAM_DM_ALLOW_FROM"),
            discord_bot_token=environ.get("DISCORD_BOT_TOKEN"),
            discord_dm_policy=environ.get("DISCORD_DM_POLICY"),
            slack_bot_token=environ.get("SLACK_BOT_TOKEN"),
            slack_app_token=environ.get("SLACK_APP_TOKEN"),
        )

    @property
    def r2_configured(self) -> bool:
        return bool(self.r2_access_key_id and self.r2_secret_access_key and self.cf_account_id)

    @property
    def has_ai_gateway_credentials(self) -> bool:
        return bool(
            self.cloudflare_ai_gateway_api_key
            and self.cf_ai_gateway_account_id
            and self.cf_ai_gateway_gateway_id
        )

    def secret_values(self) -> list[str]:
        """Credential values that must never appear in plaintext unexpectedly."""
        candidates = (
            self.r2_access_key_id,
            self.r2_secret_access_key,
            self.cloudflare_ai_gateway_api_key,
            self.anthropic_api_key,
            self.openai_api_key,
            self.sandbox_gateway_token,
            self.telegram_bot_token,
            self.discord_bot_token,
            self.slack_bot_token,
            self.slack_app_token,
        )
        return [value for value in candidates if value]
