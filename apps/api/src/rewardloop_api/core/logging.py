from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# Attributes every stdlib record carries; anything else came from ``extra=``.
_STDLIB_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Correlation keys lifted to the top level so log queries can filter on them.
_CORRELATION_KEYS = ("client_id", "member_id", "rule_id", "reference_id", "communication_id", "job_id")


class InterceptHandler(logging.Handler):
    """Send uvicorn, SQLAlchemy, Celery and APScheduler records through Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            text = record.getMessage()
        except (TypeError, ValueError):
            text = str(record.msg)

        context = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        bound = logger.bind(stdlib_logger=record.name, **context)
        # Loguru formats braces; stdlib messages are already rendered.
        bound.opt(depth=6, exception=record.exc_info).log(level, text.replace("{", "{{").replace("}", "}}"))


def _render(message: "logger.Message", service: Dict[str, str]) -> None:
    record = message.record
    extra = dict(record["extra"])

    entry: Dict[str, Any] = {
        "ts": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "event": record["message"],
        "logger": extra.pop("stdlib_logger", record["name"]),
        **service,
    }
    for key in _CORRELATION_KEYS:
        if key in extra:
            entry[key] = extra.pop(key)
    if extra:
        entry["context"] = extra

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        entry["trace_id"] = format(span_context.trace_id, "032x")
        entry["span_id"] = format(span_context.span_id, "016x")

    if record["exception"] is not None:
        error = record["exception"].value
        entry["error_type"] = type(error).__name__ if error is not None else None
        entry["error"] = str(error) if error is not None else None

    sys.stdout.write(json.dumps(entry, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """JSON-lines logging for the API, the workers and the Celery tasks."""

    service = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(lambda message: _render(message, service), level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
