from __future__ import annotations

import inspect
import json
import logging
import sys
from typing import Any

from loguru import logger
from opentelemetry import trace

_QUIET_LOGGERS = ("uvicorn.access", "botocore", "boto3", "urllib3", "stripe", "httpx")


class InterceptHandler(logging.Handler):
    """Forward records from uvicorn, SQLAlchemy, boto3 and stripe to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _attach_trace(record: dict[str, Any]) -> None:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        record["extra"]["trace_id"] = f"{span_context.trace_id:032x}"
        record["extra"]["span_id"] = f"{span_context.span_id:016x}"


def _json_sink(service: dict[str, str]):
    def write(message) -> None:
        record = message.record
        entry: dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **service,
            **record["extra"],
        }
        if record["exception"] is not None and record["exception"].type is not None:
            entry["exception"] = record["exception"].type.__name__
        sys.stdout.write(json.dumps(entry, default=str) + "\n")

    return write


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """One JSON line per record on stdout, stdlib loggers included."""

    logger.remove()
    logger.configure(patcher=_attach_trace)
    logger.add(
        _json_sink({"service": service_name, "environment": environment, "version": version}),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
