"""Structured logging configuration for gridstream."""

import json
import logging
import sys
from datetime import datetime, timezone

# Extra record attributes copied into JSON log lines
_EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "request_id",
    "field",
    "file_id",
    "bucket",
)

_DRIVER_LOGGERS = ("pymongo", "motor")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, the asyncio task name when
    logged from a writer task, plus any upload extras.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Writer tasks are named gridstream-<request>-<index>
        task = getattr(record, "taskName", None)
        if task:
            entry["task"] = task
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure root logging with the specified level and format.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Format type, 'text' for human-readable or 'json' for structured.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)

    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root.addHandler(handler)

    # Driver debug output floods the log at DEBUG level
    for name in _DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.INFO))
