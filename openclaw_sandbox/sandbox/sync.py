"""
Background mirror of local gateway state back to R2.

Every cycle sleeps, looks for files modified since the marker file, and only
when something changed runs one ``rclone sync`` per tracked tree. The loop
never exits on its own.
"""

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from ..log_config import add_file_handler, get_logger
from .rclone import RcloneClient
from .restore import CONFIG_PREFIX, SKILLS_PREFIX, WORKSPACE_PREFIX
from .settings import SandboxPaths

SYNC_INTERVAL_SECONDS = 30.0

SCAN_EXCLUDED_DIRS = {".git", "node_modules"}
CONFIG_EXCLUDES = ["*.lock", "*.log", "*.tmp", "*.pre-doctor", ".git/**"]
WORKSPACE_EXCLUDES = ["skills/**", ".git/**", "node_modules/**"]


def changed_files(root: Path, since: float) -> list[str]:
    """Relative paths of regular files under ``root`` modified after ``since``."""
    if not root.is_dir():
        return []

    changed = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in SCAN_EXCLUDED_DIRS]
        for filename in filenames:
            path = Path(dirpath) / filename
            try:
                if path.is_file() and path.stat().st_mtime > since:
                    changed.append(str(path.relative_to(root)))
            except FileNotFoundError:
                continue
    return changed


def sync_owner_alive(pidfile: Path) -> bool:
    """True if another live process recorded itself as the sync owner."""
    try:
        pid = int(pidfile.read_text().strip())
    except (OSError, ValueError):
        return False
    if pid == os.getpid():
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class BackgroundSync:
    """Periodic uploader for config, workspace and skills."""

    def __init__(
        self,
        rclone: RcloneClient,
        paths: SandboxPaths,
        interval: float = SYNC_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.rclone = rclone
        self.paths = paths
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self.log = get_logger("sync", service="sandbox")

    def _marker_time(self) -> float:
        try:
            return self.paths.sync_marker.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def _advance_marker(self, cycle_start: float) -> None:
        # Files touched while the upload ran stay newer than the marker.
        self.paths.sync_marker.touch()
        os.utime(self.paths.sync_marker, (cycle_start, cycle_start))

    def pending_changes(self) -> list[str]:
        since = self._marker_time()
        return changed_files(self.paths.config_dir, since) + changed_files(
            self.paths.workspace_dir, since
        )

    async def sync_once(self) -> bool:
        """
        Run one cycle. Returns True if an upload was attempted.

        The marker only advances when every upload succeeded, so a failed
        cycle is retried on the next tick.
        """
        cycle_start = self._clock()
        changes = self.pending_changes()
        if not changes:
            return False

        self.log.info("sync.upload_start", file_count=len(changes))
        results = [
            await self.rclone.sync_up(self.paths.config_dir, f"{CONFIG_PREFIX}/", CONFIG_EXCLUDES)
        ]
        if self.paths.workspace_dir.is_dir():
            results.append(
                await self.rclone.sync_up(
                    self.paths.workspace_dir, f"{WORKSPACE_PREFIX}/", WORKSPACE_EXCLUDES
                )
            )
        if self.paths.skills_dir.is_dir():
            results.append(await self.rclone.sync_up(self.paths.skills_dir, f"{SKILLS_PREFIX}/"))

        failed = [result for result in results if not result.ok]
        if failed:
            for result in failed:
                self.log.warn(
                    "sync.upload_failed",
                    exit_code=result.exit_code,
                    output_tail=result.output_tail(10),
                )
            return True

        self.paths.last_sync_file.write_text(datetime.now(UTC).isoformat(timespec="seconds"))
        self._advance_marker(cycle_start)
        self.log.info("sync.complete", file_count=len(changes))
        return True

    async def run_forever(self) -> None:
        self.paths.tmp_dir.mkdir(parents=True, exist_ok=True)
        add_file_handler("sync", str(self.paths.sync_log))
        if not self.paths.sync_marker.exists():
            self._advance_marker(self._clock())
        self.log.info("sync.loop_start", interval_s=self.interval)

        while True:
            await self._sleep(self.interval)
            try:
                await self.sync_once()
            except Exception as e:
                self.log.error("sync.cycle_error", exc=e)
