"""
Cold-start restore of gateway state from R2.

Config, workspace and skills are restored concurrently. The whole restore is
bounded by a hard deadline; when it expires every in-flight restore is
cancelled (killing its rclone child) and startup continues with whatever
state is already on disk.
"""

import asyncio
from pathlib import Path

from ..log_config import get_logger
from .rclone import RcloneClient
from .settings import SandboxPaths
from .types import StepResult

RESTORE_TIMEOUT_SECONDS = 60.0

CONFIG_PREFIX = "openclaw"
LEGACY_CONFIG_PREFIX = "clawdbot"
WORKSPACE_PREFIX = "workspace"
SKILLS_PREFIX = "skills"


class StateRestorer:
    """Pull config, workspace and skills backups into the container."""

    def __init__(
        self,
        rclone: RcloneClient,
        paths: SandboxPaths,
        timeout: float = RESTORE_TIMEOUT_SECONDS,
    ):
        self.rclone = rclone
        self.paths = paths
        self.timeout = timeout
        self.log = get_logger("restore", service="sandbox")

    async def restore_config(self) -> StepResult:
        config_dir = self.paths.config_dir
        primary_key = f"{CONFIG_PREFIX}/{self.paths.config_file.name}"

        if await self.rclone.object_exists(primary_key):
            self.log.info("restore.config_start", prefix=CONFIG_PREFIX)
            result = await self.rclone.copy_down(f"{CONFIG_PREFIX}/", config_dir)
            if not result.ok:
                return StepResult.failure(
                    "restore.config", f"config restore failed (exit {result.exit_code})"
                )
            self.log.info("restore.config_complete")
            return StepResult.success("restore.config")

        legacy_name = f"{LEGACY_CONFIG_PREFIX}.json"
        if await self.rclone.object_exists(f"{LEGACY_CONFIG_PREFIX}/{legacy_name}"):
            self.log.info("restore.config_start", prefix=LEGACY_CONFIG_PREFIX, legacy=True)
            result = await self.rclone.copy_down(f"{LEGACY_CONFIG_PREFIX}/", config_dir)
            if not result.ok:
                return StepResult.failure(
                    "restore.config", f"legacy config restore failed (exit {result.exit_code})"
                )
            self._adopt_legacy_config(config_dir / legacy_name)
            return StepResult.success("restore.config")

        self.log.info("restore.config_skip", reason="no_backup")
        return StepResult.success("restore.config")

    def _adopt_legacy_config(self, legacy_file: Path) -> None:
        target = self.paths.config_file
        if not legacy_file.exists():
            return
        if target.exists():
            self.log.info("restore.legacy_rename_skip", reason="primary_exists")
            return
        legacy_file.rename(target)
        self.log.info("restore.legacy_renamed", source=legacy_file.name, target=target.name)

    async def _restore_tree(self, name: str, prefix: str, dest: Path) -> StepResult:
        remote_files = await self.rclone.list_files(f"{prefix}/")
        if not remote_files:
            self.log.info(f"restore.{name}_skip", reason="no_backup")
            return StepResult.success(f"restore.{name}")

        self.log.info(f"restore.{name}_start", file_count=len(remote_files))
        result = await self.rclone.copy_down(f"{prefix}/", dest)
        if not result.ok:
            return StepResult.failure(
                f"restore.{name}", f"{name} restore failed (exit {result.exit_code})"
            )
        return StepResult.success(f"restore.{name}")

    async def restore_workspace(self) -> StepResult:
        return await self._restore_tree("workspace", WORKSPACE_PREFIX, self.paths.workspace_dir)

    async def restore_skills(self) -> StepResult:
        return await self._restore_tree("skills", SKILLS_PREFIX, self.paths.skills_dir)

    async def _guarded(self, name: str, restore) -> StepResult:
        # One target failing must not cancel its siblings.
        try:
            return await restore()
        except Exception as e:
            self.log.warn("restore.error", target=name, exc=e)
            return StepResult.failure(f"restore.{name}", str(e))

    async def restore_all(self) -> list[StepResult]:
        """Run all three restores concurrently under the hard deadline."""
        self.log.info("restore.start", timeout_seconds=self.timeout)
        targets = {
            "config": self.restore_config,
            "workspace": self.restore_workspace,
            "skills": self.restore_skills,
        }
        tasks = [
            asyncio.create_task(self._guarded(name, restore)) for name, restore in targets.items()
        ]
        try:
            async with asyncio.timeout(self.timeout):
                results = list(await asyncio.gather(*tasks))
        except TimeoutError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.log.warn("restore.timeout", timeout_seconds=self.timeout)
            return [
                task.result()
                if task.done() and not task.cancelled()
                else StepResult.failure(f"restore.{name}", f"timed out after {self.timeout:.0f}s")
                for name, task in zip(targets, tasks, strict=True)
            ]

        self.log.info("restore.complete", ok=all(result.ok for result in results))
        return results
