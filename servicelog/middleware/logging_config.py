"""
Structured logging for the service log.

- Development / testing: one readable line per record, tagged with the
  organization, plan and action the record concerns
- Production: one JSON object per line
- Level: LOG_LEVEL config key, then LOG_LEVEL env variable

Records emitted while a request is active are stamped by RequestContextFilter
with ``request_id``, ``organization_id``, ``actor_id`` and ``actor_role`` from
``flask.g``, so engine log lines can be joined to the HTTP access line without
every call site passing them.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context, has_request_context

SERVICE_NAME = "service-log"

# ``extra=`` keys copied into JSON log lines when present
EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
    "organization_id",
    "plan_id",
    "action",
    "actor_id",
    "actor_role",
)

# Short tags shown by ReadableFormatter, in this order
_READABLE_TAGS = (
    ("organization_id", "org"),
    ("plan_id", "plan"),
    ("action", "action"),
    ("actor_id", "actor"),
)


class RequestContextFilter(logging.Filter):
    """Fill request/actor fields from ``g`` unless the caller passed them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not (has_app_context() and has_request_context()):
            return True
        actor = getattr(g, "actor", None)
        context = {
            "request_id": getattr(g, "request_id", None),
            "organization_id": actor.organization_id if actor else None,
            "actor_id": actor.actor_id if actor else None,
            "actor_role": actor.role if actor else None,
        }
        for key, value in context.items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; timestamps are the record's own, in UTC."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def _tags(self, record: logging.LogRecord) -> str:
        parts = [
            f"{label}={getattr(record, key)}"
            for key, label in _READABLE_TAGS
            if getattr(record, key, None) is not None
        ]
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        duration = getattr(record, "duration_ms", None)
        suffix = f" ({duration:.0f}ms)" if duration is not None else ""
        line = f"{ts} {level} {record.name}{self._tags(record)} {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``.

    Returns the handler so callers (and tests) can inspect its formatter.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter(color=sys.stderr.isatty()))
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # Replace rather than append so repeated factories in tests don't stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "readable")
    return handler
