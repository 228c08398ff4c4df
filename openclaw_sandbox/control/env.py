"""Environment bundle passed from the control plane into the startup process."""

from collections.abc import Mapping

# Forwarded unchanged when set.
PASSTHROUGH_VARS = (
    "CLOUDFLARE_AI_GATEWAY_API_KEY",
    "CF_AI_GATEWAY_ACCOUNT_ID",
    "CF_AI_GATEWAY_GATEWAY_ID",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "TELEGRAM_DM_ALLOW_FROM",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CF_AI_GATEWAY_MODEL",
    "CF_ACCOUNT_ID",
    "CDP_SECRET",
    "WORKER_URL",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REFRESH_TOKEN",
    "GOOGLE_CALENDAR_REFRESH_TOKEN",
    "SUPERMEMORY_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET_NAME",
)

# Control-plane name -> name inside the container.
RENAMED_VARS = {
    # Not OPENCLAW_GATEWAY_TOKEN: the gateway would auto-enable token auth from it.
    "MOLTBOT_GATEWAY_TOKEN": "SANDBOX_GATEWAY_TOKEN",
    "DEV_MODE": "OPENCLAW_DEV_MODE",
}


def build_env_vars(env: Mapping[str, str | None]) -> dict[str, str]:
    """
    Build the environment for the startup process.

    A key is either present with a non-empty value or omitted entirely.
    """

    def value(name: str) -> str | None:
        raw = env.get(name)
        return raw if raw else None

    env_vars: dict[str, str] = {}
    for name in PASSTHROUGH_VARS:
        if value(name):
            env_vars[name] = value(name)

    for source, target in RENAMED_VARS.items():
        if value(source):
            env_vars[target] = value(source)

    # Legacy AI Gateway: routes through the Anthropic base URL and overrides direct keys.
    legacy_key = value("AI_GATEWAY_API_KEY")
    legacy_base = value("AI_GATEWAY_BASE_URL")
    if legacy_key and legacy_base and legacy_base.rstrip("/"):
        base_url = legacy_base.rstrip("/")
        env_vars["AI_GATEWAY_BASE_URL"] = base_url
        env_vars["ANTHROPIC_BASE_URL"] = base_url
        env_vars["ANTHROPIC_API_KEY"] = legacy_key
    elif value("ANTHROPIC_BASE_URL"):
        env_vars["ANTHROPIC_BASE_URL"] = value("ANTHROPIC_BASE_URL")

    return env_vars
