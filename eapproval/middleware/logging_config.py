"""
Logging setup for the approval engine.

Two output shapes share one root handler:
  * JSON lines outside DEBUG/TESTING, for log shipping
  * a compact coloured console line while developing or testing

Engine code attaches context through ``extra=`` (instance_id, stage_index,
rule_id, job_name ...); both formatters pick up whichever of those keys a
record carries.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime

CONTEXT_KEYS = (
    "request_id",
    "tenant_id",
    "instance_id",
    "stage_index",
    "from_status",
    "to_status",
    "actor_id",
    "rule_id",
    "job_name",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_LEVEL_COLOURS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def record_context(record: logging.LogRecord) -> dict:
    """Return the ``extra=`` context keys present on ``record``."""
    return {k: getattr(record, k) for k in CONTEXT_KEYS if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ctx = record_context(record)
        tags = []
        if "instance_id" in ctx:
            tags.append(f"instance={ctx['instance_id']}")
        if "job_name" in ctx:
            tags.append(f"job={ctx['job_name']}")
        if "duration_ms" in ctx:
            tags.append(f"{ctx['duration_ms']:.0f}ms")
        suffix = f" [{' '.join(tags)}]" if tags else ""

        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        colour = _LEVEL_COLOURS.get(record.levelno, "")
        line = f"{colour}{stamp} {record.levelname:<7}{_RESET} {record.name} {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    LOG_LEVEL overrides the default of DEBUG for development and tests and
    INFO otherwise.  Calling this again replaces the previous handler, so
    one app per test does not multiply output.
    """
    testing = app.config.get("TESTING", False)
    structured = not (testing or app.config.get("DEBUG", False))

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for chatty in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(chatty).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging ready (%s, %s)", level_name, "json" if structured else "console")
