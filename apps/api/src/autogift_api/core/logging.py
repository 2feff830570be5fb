"""Structured logging for the gift fulfillment pipeline."""

from __future__ import annotations

import json
import logging
from datetime import date
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }
)

_NOISY_LOGGERS = ("uvicorn.access", "apscheduler.executors.default", "httpx")


class InterceptHandler(logging.Handler):
    """Route stdlib log records (uvicorn, apscheduler, sqlalchemy) into loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STDLIB_RECORD_ATTRS
        }
        bound = logger.bind(**context) if context else logger
        bound.opt(depth=6, exception=record.exc_info).log(
            level, message.replace("{", "{{").replace("}", "}}")
        )


def _render(message: "logger.Message", service: Dict[str, str]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **service,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    payload.update(record["extra"])
    print(json.dumps(payload, default=str))


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Send loguru and stdlib logging to a single JSON line sink."""

    service = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(lambda message: _render(message, service), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def pipeline_logger(component: str, *, reference_date: date, simulated: bool):
    """Return a logger bound with the context shared by one pipeline invocation."""

    return logger.bind(
        component=component,
        reference_date=reference_date.isoformat(),
        simulated=simulated,
    )


__all__ = ["InterceptHandler", "configure_logging", "pipeline_logger"]
