"""
Logging setup for the WIR engine.

Two output shapes on stderr:
  - JSONFormatter      production; one object per line for the log shipper
  - ReadableFormatter  development and tests; short colored lines

Engine events carry their context through ``extra=`` (project_id, wir_id,
actor_id, event_type, from_status, to_status). Request logs from
``middleware.timing`` add method/path/status/duration_ms/request_id.
LOG_LEVEL overrides the default level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

_CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "project_id",
    "wir_id",
    "actor_id",
    "event_type",
    "from_status",
    "to_status",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "flask_limiter")


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in _CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [wir=.. actor=..]``"""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        tags = " ".join(
            f"{label}={getattr(record, key)}"
            for key, label in (("wir_id", "wir"), ("actor_id", "actor"), ("event_type", "event"))
            if getattr(record, key, None)
        )
        line = f"{stamp} {level} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{tags}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger.

    JSON when neither DEBUG nor TESTING is set, readable otherwise. Safe to
    call once per app; earlier root handlers are replaced.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter(color=sys.stderr.isatty()))
    handler.setLevel(level)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, %s)", level_name, "json" if production else "readable")
