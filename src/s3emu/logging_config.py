"""Logging setup for s3emu.

Request and storage log calls pass S3 context (bucket, key, call result,
request id) through ``extra=``. Both output formats carry that context:
``text`` appends it as ``name=value`` pairs, ``json`` adds it as fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Context attributes set via ``extra=`` by the server and the store,
# in the order they are rendered.
S3_CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "bucket",
    "key",
    "result",
)

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# The request middleware already logs one line per request.
_QUIETED_LOGGERS = ("uvicorn.access",)


def s3_context(record: logging.LogRecord) -> dict:
    """Return the S3 context attributes present on a record."""
    context = {}
    for name in S3_CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = value
    return context


class TextFormatter(logging.Formatter):
    """Human-readable lines with bucket/key/result context appended.

    Only ``bucket``, ``key`` and ``result`` are appended; the request
    fields are already part of the middleware's message.
    """

    _APPENDED = ("bucket", "key", "result")

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = s3_context(record)
        pairs = [f"{name}={context[name]}" for name in self._APPENDED if name in context]
        if pairs:
            line = f"{line} [{' '.join(pairs)}]"
        return line


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, plus the S3 context.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(s3_context(record))
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install one stderr handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: 'text' or 'json'.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(handler)

    for name in _QUIETED_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
