from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


# Attributes every stdlib LogRecord carries; anything else is caller-supplied context.
_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, SQLAlchemy, alembic) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        context = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_FIELDS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")

        bound = logger.bind(stdlib_logger=record.name, **context)
        bound.opt(depth=6, exception=record.exc_info).log(level, message)


def _build_payload(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["extra"].get("stdlib_logger", record["name"]),
        "service": metadata["service_name"],
        "environment": metadata["environment"],
        "version": metadata["version"],
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    extra = {key: value for key, value in record["extra"].items() if key != "stdlib_logger"}
    if extra.pop("consistency_error", False):
        # alerting rules match on this field
        payload["alert"] = "ledger_consistency"
    payload.update(extra)

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    return payload


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Emit one JSON object per line on stdout for both Loguru and stdlib loggers."""

    metadata = {"service_name": service_name, "environment": environment, "version": version}

    def _sink(message: "logger.Message") -> None:
        sys.stdout.write(json.dumps(_build_payload(message.record, metadata), default=str) + "\n")

    logger.remove()
    logger.add(_sink, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
