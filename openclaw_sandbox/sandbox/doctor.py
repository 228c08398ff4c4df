"""
``openclaw doctor --fix`` wrapped in snapshot / validate / rollback.

The doctor may rewrite the config artifact. It has been seen to resolve
environment references into plaintext credentials, so the artifact is
snapshotted before the fix, validated afterwards, and restored from the
snapshot when the fix left it in a worse state.
"""

import json
import shutil
from collections.abc import Iterable
from pathlib import Path

from ..log_config import get_logger
from . import commands
from .settings import SandboxPaths, SandboxSettings
from .types import StepResult

DOCTOR_TIMEOUT_SECONDS = 30.0
REDACTION_SENTINELS = ("OPENCLAW_REDACTED",)

log = get_logger("doctor", service="sandbox")


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def find_violations(before: str | None, after: str, secrets: Iterable[str]) -> list[str]:
    """
    Compare the artifact before and after a risky mutation.

    Returns human-readable reasons the mutation must be rolled back; empty
    when the new artifact is acceptable.
    """
    before = before or ""
    violations: list[str] = []

    if before and _is_json(before) and not _is_json(after):
        violations.append("config is no longer valid JSON")

    for sentinel in REDACTION_SENTINELS:
        if sentinel in after and sentinel not in before:
            violations.append(f"redaction sentinel {sentinel} written into config")

    leaked = sum(1 for secret in secrets if secret in after and secret not in before)
    if leaked:
        violations.append(f"{leaked} credential value(s) written in plaintext")

    return violations


class ConfigSnapshot:
    """Copy of the config artifact taken before a risky mutation."""

    def __init__(self, config_file: Path, suffix: str = ".pre-doctor"):
        self.config_file = config_file
        self.backup_file = config_file.with_name(config_file.name + suffix)
        self.content: str | None = None

    def take(self) -> None:
        if not self.config_file.exists():
            # A backup left by an earlier run (or restored from R2) is stale.
            self.backup_file.unlink(missing_ok=True)
            return
        shutil.copy2(self.config_file, self.backup_file)
        self.content = self.backup_file.read_text()

    def restore(self) -> bool:
        """Put back the content captured by ``take``. Nothing to restore without it."""
        if self.content is None:
            return False
        self.config_file.write_text(self.content)
        return True


async def run_doctor(
    settings: SandboxSettings,
    paths: SandboxPaths,
    timeout: float = DOCTOR_TIMEOUT_SECONDS,
) -> StepResult:
    snapshot = ConfigSnapshot(paths.config_file)
    snapshot.take()

    log.info("doctor.start", timeout_seconds=timeout)
    result = await commands.run_command(
        ["openclaw", "doctor", "--fix", "--non-interactive"], timeout=timeout
    )
    outcome = StepResult.success("doctor")
    if not result.ok:
        outcome = StepResult.failure(
            "doctor",
            "doctor timed out" if result.timed_out else f"doctor failed (exit {result.exit_code})",
        )

    if not paths.config_file.exists():
        return outcome

    violations = find_violations(
        snapshot.content, paths.config_file.read_text(), settings.secret_values()
    )
    if violations:
        restored = snapshot.restore()
        log.warn("doctor.rollback", violations=violations, restored=restored)
        return StepResult.failure("doctor", "; ".join(violations))

    log.info("doctor.complete", ok=outcome.ok)
    return outcome
