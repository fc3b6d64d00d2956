"""
JSON logging with a per-request trace id.

Each record becomes one JSON line on stdout. Structured fields arrive through
`log_event(..., **fields)`, and the trace id bound by the request middleware
is attached to everything logged while that request is handled.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from `extra`.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}
_HANDLER_MARKER = "_storefront_json_handler"

_trace_id: ContextVar[str | None] = ContextVar("storefront_trace_id", default=None)


def set_trace_id(trace_id: str | None) -> None:
    _trace_id.set(str(trace_id or "").strip() or None)


def current_trace_id() -> str | None:
    return _trace_id.get()


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if isinstance(value, Decimal):
        # Money stays exact.
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class JsonLogFormatter(logging.Formatter):
    """`ts`, `level`, `logger`, `event`, the bound trace id, then the record's extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        trace_id = current_trace_id()
        if trace_id:
            entry["trace_id"] = trace_id
        entry.update(
            (key, _jsonable(value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_json_logging(*, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    # Plain console handlers would print every record a second time; capture handlers stay.
    root.handlers = [existing for existing in root.handlers if type(existing) is not logging.StreamHandler]
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    # `extra` keys that shadow record attributes make logging raise KeyError.
    extra = {(f"field_{key}" if key in _RECORD_ATTRS else key): _jsonable(value) for key, value in fields.items()}
    logger.log(level, event, extra=extra)
