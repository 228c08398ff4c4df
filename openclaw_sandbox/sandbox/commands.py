"""Bounded execution of external tools (openclaw CLI, rclone)."""

import asyncio
from collections.abc import Mapping
from pathlib import Path

from .types import CommandResult


async def run_command(
    args: list[str],
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> CommandResult:
    """
    Run a command to completion, capturing combined stdout/stderr.

    Never raises for a non-zero exit. On timeout the child is killed and the
    result is marked ``timed_out``. If the awaiting task is cancelled the child
    is killed before the cancellation propagates, so no orphan keeps writing
    into the filesystem after its caller gave up.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        return CommandResult(args=args, exit_code=127, output=str(e))

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        stdout = await process.stdout.read() if process.stdout else b""
        await process.wait()
        return CommandResult(
            args=args,
            exit_code=process.returncode,
            output=stdout.decode(errors="replace"),
            timed_out=True,
        )
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return CommandResult(
        args=args,
        exit_code=process.returncode,
        output=(stdout or b"").decode(errors="replace"),
    )
