from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace


# Attributes every LogRecord carries; anything else was passed via ``extra=``.
_STANDARD_RECORD_ATTRS = frozenset(LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "apscheduler.executors.default")

# Provider payloads are logged on failure; never let credentials ride along.
_REDACTED_KEYS = frozenset({"access_token", "authorization", "client_secret", "refresh_token", "sumup-signature"})


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "***" if str(key).lower() in _REDACTED_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (uvicorn, SQLAlchemy, APScheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_RECORD_ATTRS}
        extra["logger_name"] = record.name

        safe_message = message.replace("{", "{{").replace("}", "}}")
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, safe_message)


def _build_payload(message: "logger.Message", metadata: Dict[str, Any]) -> Dict[str, Any]:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None:
        exc_type, exc_value, _ = record["exception"]
        payload["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "value": str(exc_value) if exc_value else None,
        }

    payload.update(_redact(record["extra"]))
    return payload


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Emit one JSON document per log line and bridge stdlib loggers into Loguru."""

    metadata = {"service": service_name, "environment": environment, "version": version}

    def _sink(message: "logger.Message") -> None:
        sys.stdout.write(json.dumps(_build_payload(message, metadata), default=str) + "\n")

    logger.remove()
    logger.add(_sink, level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
