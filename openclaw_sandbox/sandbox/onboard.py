"""Non-interactive first-run onboarding for a container with no config yet."""

from ..log_config import get_logger
from . import commands
from .settings import GATEWAY_PORT, SandboxPaths, SandboxSettings
from .types import StepResult

ONBOARD_TIMEOUT_SECONDS = 60.0


def build_auth_args(settings: SandboxSettings) -> list[str]:
    """
    Pick onboarding auth flags by credential precedence.

    AI Gateway (all three values) > Anthropic key > OpenAI key > none.
    """
    if settings.has_ai_gateway_credentials:
        return [
            "--auth-choice",
            "cloudflare-ai-gateway-api-key",
            "--cloudflare-ai-gateway-account-id",
            settings.cf_ai_gateway_account_id,
            "--cloudflare-ai-gateway-gateway-id",
            settings.cf_ai_gateway_gateway_id,
            "--cloudflare-ai-gateway-api-key",
            settings.cloudflare_ai_gateway_api_key,
        ]
    if settings.anthropic_api_key:
        return ["--auth-choice", "apiKey", "--anthropic-api-key", settings.anthropic_api_key]
    if settings.openai_api_key:
        return ["--auth-choice", "openai-api-key", "--openai-api-key", settings.openai_api_key]
    return []


def build_onboard_command(settings: SandboxSettings) -> list[str]:
    return [
        "openclaw",
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--mode",
        "local",
        *build_auth_args(settings),
        "--gateway-port",
        str(GATEWAY_PORT),
        "--gateway-bind",
        "lan",
        "--skip-channels",
        "--skip-skills",
        "--skip-health",
    ]


async def run_onboard(
    settings: SandboxSettings,
    paths: SandboxPaths,
    timeout: float = ONBOARD_TIMEOUT_SECONDS,
) -> StepResult:
    """Onboard only when no config artifact exists. Failure is non-fatal."""
    log = get_logger("onboard", service="sandbox")

    if paths.config_file.exists():
        log.info("onboard.skip", reason="config_exists")
        return StepResult.success("onboard")

    auth_args = build_auth_args(settings)
    log.info("onboard.start", auth_choice=auth_args[1] if auth_args else None)

    result = await commands.run_command(build_onboard_command(settings), timeout=timeout)
    if result.timed_out:
        return StepResult.failure("onboard", f"onboard timed out after {timeout:.0f}s")
    if not result.ok:
        log.debug("onboard.output", output_tail=result.output_tail())
        return StepResult.failure("onboard", f"onboard failed (exit {result.exit_code})")

    log.info("onboard.complete")
    return StepResult.success("onboard")
