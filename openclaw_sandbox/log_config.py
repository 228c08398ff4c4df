"""
Structured logging for the sandbox and control plane.

Every record is a single JSON object per line:

    {"ts": "...", "level": "info", "component": "supervisor",
     "event": "supervisor.gateway_start", "service": "sandbox", ...}

Call sites log an event name plus keyword fields:

    log = get_logger("supervisor", service="sandbox")
    log.info("supervisor.gateway_exit", exit_code=1, ran_for_s=3.2)
    log.warn("restore.failed", target="workspace", exc=e)
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

_ROOT_LOGGER_NAME = "openclaw_sandbox"
_configured = False


class JsonFormatter(logging.Formatter):
    """Render records produced by StructuredLogger as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "event": record.getMessage(),
        }
        payload.update(getattr(record, "fields", {}))
        return json.dumps(payload, default=str)


def _resolve_level(value: str | None) -> int:
    level = logging.getLevelName((value or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Install the JSON handler on the package root logger (idempotent)."""
    global _configured
    if _configured:
        return

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.setLevel(_resolve_level(level or os.environ.get("LOG_LEVEL")))
    root.propagate = False

    formatter = JsonFormatter()
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = log_file or os.environ.get("LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    _configured = True


def add_file_handler(component: str, path: str) -> None:
    """Mirror one component's records into a dedicated file."""
    logger = logging.getLogger(f"{_ROOT_LOGGER_NAME}.{component}")
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(
            path
        ):
            return
    handler = logging.FileHandler(path)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)


class StructuredLogger:
    """Thin wrapper binding static context fields to a stdlib logger."""

    def __init__(self, component: str, **context: Any):
        self.component = component
        self.context = context
        self._logger = logging.getLogger(f"{_ROOT_LOGGER_NAME}.{component}")

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.component, **{**self.context, **context})

    def _log(self, level: int, event: str, exc: BaseException | None, fields: dict[str, Any]):
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **fields}
        if exc is not None:
            merged["error"] = str(exc)
            merged["error_type"] = type(exc).__name__
        self._logger.log(level, event, extra={"component": self.component, "fields": merged})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.WARNING, event, exc, fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc, fields)


def get_logger(component: str, **context: Any) -> StructuredLogger:
    return StructuredLogger(component, **context)
