"""Small filesystem setup helpers used on cold start."""

import contextlib
import json
import shutil
from typing import Any

from ..log_config import get_logger
from .settings import SandboxPaths
from .types import StepResult

SENSITIVE_KEY_PARTS = ("key", "token", "secret", "password")
REDACT_MAX_DEPTH = 3

log = get_logger("bootstrap", service="sandbox")


def bootstrap_workspace(paths: SandboxPaths) -> StepResult:
    """Copy identity markdown files into the workspace without overwriting."""
    if not paths.bootstrap_dir.is_dir():
        return StepResult.success("workspace_bootstrap")

    paths.workspace_dir.mkdir(parents=True, exist_ok=True)
    for source in sorted(paths.bootstrap_dir.glob("*.md")):
        if not source.is_file():
            continue
        target = paths.workspace_dir / source.name
        if target.exists():
            log.debug("bootstrap.skip", file=source.name, reason="exists")
            continue
        shutil.copy(source, target)
        log.info("bootstrap.copied", file=source.name)
    return StepResult.success("workspace_bootstrap")


def remove_config_locks(paths: SandboxPaths) -> StepResult:
    """Remove stale ``*.lock`` files left in the config dir by a previous boot."""
    removed = []
    for lock in paths.config_dir.glob("*.lock"):
        with contextlib.suppress(FileNotFoundError):
            lock.unlink()
            removed.append(lock.name)
    if removed:
        log.info("bootstrap.locks_removed", files=removed)
    return StepResult.success("lock_cleanup")


def redact(value: Any, depth: int = 0) -> Any:
    """Replace string values under credential-looking keys with ``[REDACTED]``."""
    if depth > REDACT_MAX_DEPTH:
        return value
    if isinstance(value, list):
        return [redact(item, depth + 1) for item in value]
    if not isinstance(value, dict):
        return value

    redacted = {}
    for key, item in value.items():
        lowered = str(key).lower()
        if isinstance(item, str) and any(part in lowered for part in SENSITIVE_KEY_PARTS):
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = redact(item, depth + 1)
    return redacted


def dump_config(paths: SandboxPaths) -> StepResult:
    """Log the current config for diagnostics, secrets redacted."""
    try:
        raw = paths.config_file.read_text()
    except OSError as e:
        return StepResult.failure("config_dump", f"could not read config: {e}")

    try:
        document = json.loads(raw)
    except ValueError:
        log.warn("bootstrap.config_invalid", preview=raw[:500])
        return StepResult.failure("config_dump", "config is not valid JSON")

    log.info("bootstrap.config", config=redact(document))
    return StepResult.success("config_dump")
