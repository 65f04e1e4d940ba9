"""Structured logging configuration.

In production (ENVIRONMENT != "development"), logs are emitted as JSON lines
so bundle, transfer and export runs can be followed per service in the log
aggregator.

Run context (``service_key``, ``job_id``) is carried in context variables.
``log_context`` binds it for the duration of a pipeline run and
``ContextFilter`` stamps it onto every record emitted meanwhile, including
records from the BPMN and transfer modules that know nothing about jobs.
An explicit ``extra=`` value on a single call wins over the bound one.

In development, logs use a human-readable format with the service key
appended when one is bound.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

CONTEXT_FIELDS = ("service_key", "job_id")

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(name, default=None) for name in CONTEXT_FIELDS
}


@contextmanager
def log_context(**fields: object) -> Iterator[None]:
    """Bind run context for every record logged inside the block."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    tokens = [
        (_context[name], _context[name].set(None if value is None else str(value)))
        for name, value in fields.items()
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_context() -> dict[str, str]:
    return {name: var.get() for name, var in _context.items() if var.get() is not None}


class ContextFilter(logging.Filter):
    """Copy bound run context onto records that don't carry it already."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in current_context().items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class DevFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        service_key = getattr(record, "service_key", None)
        return f"{line} [{service_key}]" if service_key else line


def configure_logging(environment: str = "development", level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Call once at application startup, before any log messages are emitted.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(DevFormatter() if environment == "development" else JSONFormatter())
    root.addHandler(handler)

    # httpx logs every request line at INFO; the transfer engine logs its own summary
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.INFO)
