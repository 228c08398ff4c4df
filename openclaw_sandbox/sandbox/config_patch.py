"""
Deterministic merge of environment-derived settings into ``openclaw.json``.

``patch_config`` is a pure function of (document, settings, paths). Applying
it to its own output yields the same document.
"""

import copy
import json
from typing import Any

from ..log_config import get_logger
from .settings import GATEWAY_PORT, SandboxPaths, SandboxSettings
from .types import StepResult

TRUSTED_PROXIES = ["10.1.0.0"]
FALLBACK_GATEWAY_TOKEN = "sandbox-internal-fallback"
AI_GATEWAY_BASE = "https://gateway.ai.cloudflare.com/v1"
WORKERS_AI_BASE = "https://api.cloudflare.com/client/v4/accounts"
MODEL_CONTEXT_WINDOW = 131072
MODEL_MAX_TOKENS = 8192

log = get_logger("config_patch", service="sandbox")


def _section(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def _ai_gateway_base_url(provider: str, settings: SandboxSettings) -> str | None:
    if settings.cf_ai_gateway_account_id and settings.cf_ai_gateway_gateway_id:
        base_url = (
            f"{AI_GATEWAY_BASE}/{settings.cf_ai_gateway_account_id}/"
            f"{settings.cf_ai_gateway_gateway_id}/{provider}"
        )
        if provider == "workers-ai":
            base_url += "/v1"
        return base_url
    if provider == "workers-ai" and settings.cf_account_id:
        return f"{WORKERS_AI_BASE}/{settings.cf_account_id}/ai/v1"
    return None


def _apply_model_override(config: dict[str, Any], settings: SandboxSettings) -> None:
    raw = settings.cf_ai_gateway_model
    if not raw:
        return

    provider, _, model_id = raw.partition("/")
    base_url = _ai_gateway_base_url(provider, settings)
    api_key = settings.cloudflare_ai_gateway_api_key
    if not (base_url and api_key and model_id):
        log.warn(
            "config_patch.model_override_skipped",
            reason="missing account id, gateway id, api key or model id",
            model=raw,
        )
        return

    provider_name = f"cf-ai-gw-{provider}"
    providers = _section(_section(config, "models"), "providers")
    providers[provider_name] = {
        "baseUrl": base_url,
        "apiKey": api_key,
        "api": "anthropic-messages" if provider == "anthropic" else "openai-completions",
        "models": [
            {
                "id": model_id,
                "name": model_id,
                "contextWindow": MODEL_CONTEXT_WINDOW,
                "maxTokens": MODEL_MAX_TOKENS,
            }
        ],
    }
    defaults = _section(_section(config, "agents"), "defaults")
    defaults["model"] = {"primary": f"{provider_name}/{model_id}"}
    log.info(
        "config_patch.model_override",
        provider=provider_name,
        model=model_id,
        base_url=base_url,
    )


def _apply_channels(channels: dict[str, Any], settings: SandboxSettings) -> None:
    if settings.telegram_bot_token:
        dm_policy = settings.telegram_dm_policy or "pairing"
        telegram: dict[str, Any] = {
            "botToken": settings.telegram_bot_token,
            "enabled": True,
            "dmPolicy": dm_policy,
        }
        if settings.telegram_dm_allow_from:
            allow_from = [
                entry.strip()
                for entry in settings.telegram_dm_allow_from.split(",")
                if entry.strip()
            ]
            # The gateway rejects dmPolicy=open unless allowFrom contains "*".
            if dm_policy == "open" and "*" not in allow_from:
                allow_from.append("*")
            telegram["allowFrom"] = allow_from
        elif dm_policy == "open":
            telegram["allowFrom"] = ["*"]
        channels["telegram"] = telegram

    if settings.discord_bot_token:
        dm_policy = settings.discord_dm_policy or "pairing"
        dm: dict[str, Any] = {"policy": dm_policy}
        if dm_policy == "open":
            dm["allowFrom"] = ["*"]
        channels["discord"] = {
            "token": settings.discord_bot_token,
            "enabled": True,
            "dm": dm,
        }

    if settings.slack_bot_token and settings.slack_app_token:
        channels["slack"] = {
            "botToken": settings.slack_bot_token,
            "appToken": settings.slack_app_token,
            "enabled": True,
        }


def patch_config(
    document: dict[str, Any], settings: SandboxSettings, paths: SandboxPaths
) -> dict[str, Any]:
    """Return a patched copy of ``document``."""
    config = copy.deepcopy(document)

    gateway = _section(config, "gateway")
    channels = _section(config, "channels")

    defaults = _section(_section(config, "agents"), "defaults")
    defaults["workspace"] = str(paths.workspace_dir)

    gateway["port"] = GATEWAY_PORT
    gateway["mode"] = "local"
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)
    # LAN binding requires explicit token auth; the real auth boundary is upstream.
    gateway["auth"] = {
        "mode": "token",
        "token": settings.sandbox_gateway_token or FALLBACK_GATEWAY_TOKEN,
    }

    control_ui = _section(gateway, "controlUi")
    control_ui["allowInsecureAuth"] = True
    control_ui["dangerouslyDisableDeviceAuth"] = True

    _apply_model_override(config, settings)
    _apply_channels(channels, settings)
    return config


def load_config(paths: SandboxPaths) -> dict[str, Any]:
    """Read the config artifact, treating a missing or unparsable file as empty."""
    try:
        document = json.loads(paths.config_file.read_text())
    except FileNotFoundError:
        log.info("config_patch.empty_config", reason="missing")
        return {}
    except (OSError, ValueError) as e:
        log.warn("config_patch.empty_config", reason="unparsable", exc=e)
        return {}
    if not isinstance(document, dict):
        log.warn("config_patch.empty_config", reason="not_an_object")
        return {}
    return document


def apply_config_patch(settings: SandboxSettings, paths: SandboxPaths) -> StepResult:
    """Read-or-default, patch and overwrite the config artifact."""
    log.info("config_patch.start", path=str(paths.config_file))
    patched = patch_config(load_config(paths), settings, paths)
    paths.config_dir.mkdir(parents=True, exist_ok=True)
    paths.config_file.write_text(json.dumps(patched, indent=2))
    log.info("config_patch.complete", channels=sorted(patched.get("channels", {})))
    return StepResult.success("config_patch")
