"""Tests for the rclone wrapper."""

import stat

import pytest

from openclaw_sandbox.sandbox import commands
from openclaw_sandbox.sandbox.rclone import RCLONE_FLAGS, RcloneClient
from openclaw_sandbox.sandbox.settings import SandboxSettings
from openclaw_sandbox.sandbox.types import CommandResult


@pytest.fixture
def r2_settings() -> SandboxSettings:
    return SandboxSettings(
        r2_access_key_id="AKID",
        r2_secret_access_key="SECRET",
        cf_account_id="acct",
        r2_bucket_name="my-bucket",
    )


@pytest.fixture
def recorded(monkeypatch):
    calls = []
    outputs = {}

    async def fake_run(args, timeout=None, **kwargs):
        calls.append(args)
        exit_code, output = outputs.get(args[1], (0, ""))
        return CommandResult(args=args, exit_code=exit_code, output=output)

    monkeypatch.setattr(commands, "run_command", fake_run)
    return calls, outputs


def test_write_config(r2_settings, paths):
    RcloneClient(r2_settings, paths).write_config()

    conf = paths.rclone_conf.read_text()
    assert conf.startswith("[r2]\ntype = s3\nprovider = Cloudflare\n")
    assert "access_key_id = AKID" in conf
    assert "endpoint = https://acct.r2.cloudflarestorage.com" in conf
    assert stat.S_IMODE(paths.rclone_conf.stat().st_mode) == 0o600
    assert paths.rclone_flag.exists()


@pytest.mark.asyncio
async def test_sync_up_arguments(r2_settings, paths, recorded):
    calls, _ = recorded

    result = await RcloneClient(r2_settings, paths).sync_up(
        paths.config_dir, "openclaw/", excludes=["*.lock", ".git/**"]
    )

    assert result.ok
    assert calls == [
        [
            "rclone",
            "sync",
            "--config",
            str(paths.rclone_conf),
            f"{paths.config_dir}/",
            "r2:my-bucket/openclaw/",
            *RCLONE_FLAGS,
            "--exclude=*.lock",
            "--exclude=.git/**",
        ]
    ]


@pytest.mark.asyncio
async def test_copy_down_creates_destination(r2_settings, paths, recorded):
    calls, _ = recorded
    dest = paths.workspace_dir / "skills"

    await RcloneClient(r2_settings, paths).copy_down("skills/", dest)

    assert dest.is_dir()
    assert calls[0][4:6] == ["r2:my-bucket/skills/", f"{dest}/"]
    assert calls[0][-1] == "-v"


@pytest.mark.asyncio
async def test_list_files_and_object_exists(r2_settings, paths, recorded):
    _, outputs = recorded
    outputs["ls"] = (0, "      120 openclaw.json\n\n")
    client = RcloneClient(r2_settings, paths)

    assert await client.list_files("openclaw/") == ["      120 openclaw.json"]
    assert await client.object_exists("openclaw/openclaw.json")
    assert not await client.object_exists("openclaw/clawdbot.json")


@pytest.mark.asyncio
async def test_list_failure_is_empty(r2_settings, paths, recorded):
    _, outputs = recorded
    outputs["ls"] = (3, "directory not found")

    assert await RcloneClient(r2_settings, paths).list_files("workspace/") == []
