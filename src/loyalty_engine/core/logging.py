from __future__ import annotations

import json
import logging
import sys
from typing import Any

from loguru import logger
from opentelemetry import trace

# Libraries whose stdlib loggers are routed into loguru, with their floor level.
_LIBRARY_LEVELS = {
    "sqlalchemy.engine": logging.WARNING,
    "alembic": logging.INFO,
    "apscheduler": logging.INFO,
}


class InterceptHandler(logging.Handler):
    """Forward stdlib records from SQLAlchemy, alembic and APScheduler to loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _attach_trace(record: dict[str, Any]) -> None:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        record["extra"]["trace_id"] = f"{span_context.trace_id:032x}"
        record["extra"]["span_id"] = f"{span_context.span_id:016x}"


def _json_line(record: dict[str, Any]) -> str:
    payload: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **{key: value for key, value in record["extra"].items() if key != "json"},
    }
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    record["extra"]["json"] = json.dumps(payload, default=str)
    return "{extra[json]}\n"


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Emit one JSON object per line, tagged with the service identity and active trace."""

    logger.remove()
    logger.configure(
        extra={"service": service_name, "environment": environment, "version": version},
        patcher=_attach_trace,
    )
    logger.add(sys.stdout, format=_json_line, level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, floor in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(floor)
