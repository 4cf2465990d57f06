"""
Structured logging for sync components.

Components log through ``get_sync_logger()`` so every line carries the
component name plus whatever sync context applies (the queued action, its
correlation id, the storage namespace). Hosts that ship logs to a
collector call ``configure_structured_logging()`` once at startup; the
library itself never installs handlers.

Example JSON line:

    {"timestamp": "...", "level": "WARNING", "component": "queue.processor",
     "message": "RETRYING: attempt=1/3 ...",
     "context": {"action_id": "...", "correlation_id": "..."}}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

PACKAGE_LOGGER = "offline_sync"

# Sync context promoted into the "context" object, in this order
CONTEXT_FIELDS = ("action_id", "correlation_id", "entity_id", "namespace", "topic")

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def component_name(logger_name: str) -> str:
    """``offline_sync.queue.processor`` -> ``queue.processor``."""
    if logger_name.startswith(PACKAGE_LOGGER + "."):
        return logger_name[len(PACKAGE_LOGGER) + 1 :]
    return logger_name


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per log line.

    Fields:
    - timestamp: ISO 8601 in UTC, taken from the record's creation time
    - level, component, message
    - context: sync context fields present on the record (see CONTEXT_FIELDS)
    - extra: any other ``extra=`` values, stringified if not JSON-safe
    - error: exception type, message and traceback when ``exc_info`` is set
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "component": component_name(record.name),
            "message": record.getMessage(),
        }

        context = {
            name: getattr(record, name)
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        }
        if context:
            entry["context"] = context

        extra = {
            key: _json_safe(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            entry["error"] = {
                "type": type(error).__name__,
                "message": str(error),
                "traceback": self.formatException(record.exc_info),
            }
            kind = getattr(error, "kind", None)
            if kind is not None:
                entry["error"]["kind"] = kind

        return json.dumps(entry, default=str)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def configure_structured_logging(
    level: int | str = logging.INFO,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send the package's logs to ``stream`` as JSON lines.

    Calling it again replaces the previous handler rather than adding one.

    Args:
        level: Level number or name (``"DEBUG"``, ``"info"``, ...)
        stream: Destination (default: stdout)

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Logger carrying fixed sync context.

    Per-call ``extra=`` values win over the bound context, so a single
    line can override e.g. ``entity_id`` without rebinding.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: Any) -> SyncLoggerAdapter:
        """A new adapter with ``context`` added to this one's."""
        return SyncLoggerAdapter(self.logger, {**(self.extra or {}), **context})


def get_sync_logger(name: str, **context: Any) -> SyncLoggerAdapter:
    """
    Logger for a sync component, bound to ``context``.

    Args:
        name: Module ``__name__`` or a short component name such as
            ``"channel"`` (prefixed with the package name)
        **context: Fields attached to every line, e.g. ``action_id``

    Returns:
        Adapter over the ``offline_sync.*`` logger
    """
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    bound = {k: v for k, v in context.items() if v is not None}
    return SyncLoggerAdapter(logging.getLogger(name), bound)
