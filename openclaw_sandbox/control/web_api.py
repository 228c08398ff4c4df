"""
HTTP endpoints for gateway lifecycle control.

Callers (the request-routing layer in front of the sandbox) hit
``POST /gateway/ensure`` before proxying traffic; the orchestrator reuses,
replaces or cold-starts the gateway as needed.

SECURITY: every endpoint requires ``Authorization: Bearer <CONTROL_API_TOKEN>``.
"""

import hmac
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request

from ..log_config import configure_logging, get_logger
from .env import build_env_vars
from .process import GatewayOrchestrator, GatewayStartupError
from .runtime import HttpSandboxRuntime, SandboxRuntimeError
from .settings import ControlSettings
from .types import ProcessInfo

configure_logging()
log = get_logger("web_api", service="control")


def require_auth(expected_token: str | None, authorization: str | None) -> None:
    """
    Verify the bearer token, raising HTTPException on failure.

    Raises:
        HTTPException: 401 if the token is wrong or missing, 503 if no token
            is configured on the server
    """
    if not expected_token:
        raise HTTPException(
            status_code=503,
            detail="Service unavailable: Authentication not configured.",
        )
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token, expected_token):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: Invalid or missing authentication token",
        )


def _process_payload(process: ProcessInfo) -> dict:
    return {"process_id": process.id, "status": process.status.value, "command": process.command}


def create_app(orchestrator: GatewayOrchestrator, api_token: str | None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        aclose = getattr(app.state.orchestrator.runtime, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title="openclaw-sandbox control", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    def _orchestrator(request: Request) -> GatewayOrchestrator:
        return request.app.state.orchestrator

    async def _handled(endpoint_name: str, call) -> dict:
        start_time = time.time()
        http_status = 200
        outcome = "success"
        try:
            return await call()
        except HTTPException as e:
            outcome = "error"
            http_status = e.status_code
            raise
        except GatewayStartupError as e:
            outcome = "error"
            http_status = 502
            log.error("api.gateway_startup_failed", exc=e, endpoint_name=endpoint_name)
            raise HTTPException(
                status_code=502,
                detail={"error": str(e), "stdout": e.stdout, "stderr": e.stderr},
            )
        except SandboxRuntimeError as e:
            outcome = "error"
            http_status = 503
            log.error("api.runtime_error", exc=e, endpoint_name=endpoint_name)
            raise HTTPException(status_code=503, detail={"error": str(e)})
        finally:
            log.info(
                "control.http_request",
                endpoint_name=endpoint_name,
                http_status=http_status,
                outcome=outcome,
                duration_ms=int((time.time() - start_time) * 1000),
            )

    @app.post("/gateway/ensure")
    async def ensure_gateway(request: Request, authorization: str | None = Header(None)) -> dict:
        require_auth(api_token, authorization)

        async def ensure() -> dict:
            process = await _orchestrator(request).ensure_gateway()
            return {"success": True, "data": _process_payload(process)}

        return await _handled("ensure_gateway", ensure)

    @app.post("/gateway/restart")
    async def restart_gateway(request: Request, authorization: str | None = Header(None)) -> dict:
        require_auth(api_token, authorization)

        async def restart() -> dict:
            process = await _orchestrator(request).restart_gateway()
            return {"success": True, "data": _process_payload(process)}

        return await _handled("restart_gateway", restart)

    @app.get("/gateway/status")
    async def gateway_status(request: Request, authorization: str | None = Header(None)) -> dict:
        require_auth(api_token, authorization)

        async def status() -> dict:
            process = await _orchestrator(request).find_existing_gateway()
            if process is None:
                return {"success": True, "data": {"running": False}}
            return {"success": True, "data": {"running": True, **_process_payload(process)}}

        return await _handled("gateway_status", status)

    @app.get("/gateway/logs")
    async def gateway_logs(request: Request, authorization: str | None = Header(None)) -> dict:
        require_auth(api_token, authorization)

        async def logs() -> dict:
            orchestrator = _orchestrator(request)
            process = await orchestrator.find_existing_gateway()
            if process is None:
                raise HTTPException(status_code=404, detail="No gateway process found")
            output = await orchestrator.runtime.get_logs(process.id)
            data = {"process_id": process.id, "stdout": output.stdout, "stderr": output.stderr}
            return {"success": True, "data": data}

        return await _handled("gateway_logs", logs)

    return app


def build_app(environ=None) -> FastAPI:
    environ = os.environ if environ is None else environ
    settings = ControlSettings.from_env(environ)
    runtime = HttpSandboxRuntime(
        settings.runtime_url, token=settings.runtime_token, probe_host=settings.probe_host
    )
    orchestrator = GatewayOrchestrator(runtime, env_vars=build_env_vars(environ))
    return create_app(orchestrator, settings.api_token)


def main() -> None:
    settings = ControlSettings.from_env(os.environ)
    log.info("control.start", host=settings.host, port=settings.port)
    uvicorn.run(build_app(), host=settings.host, port=settings.port, log_config=None)
