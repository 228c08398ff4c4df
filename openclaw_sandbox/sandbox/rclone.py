"""
rclone wrapper for the R2 bucket holding persisted gateway state.

The remote is always named ``r2``. Object paths are ``r2:<bucket>/<prefix>/``.
"""

from pathlib import Path

from ..log_config import get_logger
from . import commands
from .settings import SandboxPaths, SandboxSettings
from .types import CommandResult

RCLONE_FLAGS = [
    "--transfers=16",
    "--fast-list",
    "--s3-no-check-bucket",
    "--contimeout",
    "10s",
    "--timeout",
    "30s",
    "--retries",
    "1",
]

REMOTE_NAME = "r2"


class RcloneClient:
    """List, copy and sync against the configured R2 bucket."""

    def __init__(self, settings: SandboxSettings, paths: SandboxPaths):
        self.settings = settings
        self.paths = paths
        self.log = get_logger("rclone", service="sandbox", bucket=settings.r2_bucket_name)

    def remote(self, prefix: str) -> str:
        return f"{REMOTE_NAME}:{self.settings.r2_bucket_name}/{prefix}"

    def write_config(self) -> None:
        """Write the rclone remote definition and the configured flag file."""
        conf = self.paths.rclone_conf
        conf.parent.mkdir(parents=True, exist_ok=True)
        conf.write_text(
            "\n".join(
                [
                    f"[{REMOTE_NAME}]",
                    "type = s3",
                    "provider = Cloudflare",
                    f"access_key_id = {self.settings.r2_access_key_id}",
                    f"secret_access_key = {self.settings.r2_secret_access_key}",
                    f"endpoint = https://{self.settings.cf_account_id}.r2.cloudflarestorage.com",
                    "acl = private",
                    "no_check_bucket = true",
                    "",
                ]
            )
        )
        conf.chmod(0o600)
        self.paths.tmp_dir.mkdir(parents=True, exist_ok=True)
        self.paths.rclone_flag.touch()
        self.log.info("rclone.configured", conf=str(conf))

    def _base_args(self, subcommand: str) -> list[str]:
        return ["rclone", subcommand, "--config", str(self.paths.rclone_conf)]

    async def _run(self, args: list[str], timeout: float | None = None) -> CommandResult:
        return await commands.run_command(args, timeout=timeout)

    async def list_files(self, prefix: str) -> list[str]:
        """Return ``rclone ls`` lines under a remote prefix; empty on any failure."""
        result = await self._run([*self._base_args("ls"), self.remote(prefix), *RCLONE_FLAGS])
        if not result.ok:
            self.log.debug("rclone.ls_failed", prefix=prefix, exit_code=result.exit_code)
            return []
        return [line for line in result.output.splitlines() if line.strip()]

    async def object_exists(self, key: str) -> bool:
        """True if ``rclone ls`` on an exact key lists that object's file name."""
        name = key.rsplit("/", 1)[-1]
        return any(line.rstrip().endswith(name) for line in await self.list_files(key))

    async def copy_down(self, prefix: str, dest: Path) -> CommandResult:
        dest.mkdir(parents=True, exist_ok=True)
        return await self._run(
            [*self._base_args("copy"), self.remote(prefix), f"{dest}/", *RCLONE_FLAGS, "-v"]
        )

    async def sync_up(
        self, source: Path, prefix: str, excludes: list[str] | None = None
    ) -> CommandResult:
        args = [*self._base_args("sync"), f"{source}/", self.remote(prefix), *RCLONE_FLAGS]
        for pattern in excludes or []:
            args.append(f"--exclude={pattern}")
        return await self._run(args)
