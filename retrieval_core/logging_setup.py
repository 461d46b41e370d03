"""Centralised logging setup.

Events are logged as snake_case messages with structured ``extra`` fields.
The plain formatter appends those fields as ``key=value`` pairs after the
message; the JSON formatter emits them as top-level keys.
"""

import json
import logging
import sys
from logging import Logger, LoggerAdapter
from typing import Any, Dict, List, Optional

from retrieval_core import config

# Attributes present on every LogRecord; anything else arrived via ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "run_id", "fields"}

_REDACTED_FIELDS = ("query", "query_text")


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class _DefaultFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "run_id"):
            record.run_id = "-"
        extras = _extra_fields(record)
        record.fields = "".join(
            f" {key}={value}" for key, value in sorted(extras.items())
        )
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "-"),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _RedactFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if config.LOG_REDACT_QUERIES:
            for field in _REDACTED_FIELDS:
                if hasattr(record, field):
                    setattr(record, field, "[REDACTED]")
        return True


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    file_path: Optional[str] = None,
    force: bool = False,
) -> None:
    """Install root handlers.

    Does nothing when the root logger already has handlers, unless
    ``force`` is set. Arguments default to the ``LOG_*`` configuration.
    """
    if logging.getLogger().handlers and not force:
        return
    level_name = (level or config.LOG_LEVEL).upper()
    formatter: logging.Formatter
    if (fmt or config.LOG_FORMAT).lower() == "json":
        formatter = _JsonFormatter()
    else:
        formatter = _DefaultFormatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] [run=%(run_id)s] %(message)s%(fields)s"
        )
    redact_filter = _RedactFilter()

    handler = logging.StreamHandler(sys.stdout)
    handlers: List[logging.Handler] = [handler]
    file_path = file_path if file_path is not None else config.LOG_FILE_PATH
    if file_path:
        handlers.append(logging.FileHandler(file_path))
    for h in handlers:
        h.setFormatter(formatter)
        h.addFilter(redact_filter)

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        handlers=handlers,
        force=force,
    )


class _RunLoggerAdapter(LoggerAdapter):
    """Adds ``run_id`` while keeping the caller's own ``extra`` fields."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**(kwargs.get("extra") or {}), **self.extra}
        return msg, kwargs


def get_logger(name: str, run_id: str | None = None) -> Logger | LoggerAdapter:
    """Return a logger configured with optional run correlation id."""
    configure_logging()
    base = logging.getLogger(name)
    if run_id:
        return _RunLoggerAdapter(base, extra={"run_id": run_id})
    return base
