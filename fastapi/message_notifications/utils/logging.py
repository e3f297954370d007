"""JSON logging helpers shared by the service."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_LOGGER_NAME = "message_notifications"
_SERVICE_NAME = "message-notifications"

_SENSITIVE_KEYWORDS = (
    "token",
    "secret",
    "authorization",
    "password",
    "content",
)

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10

_RESERVED = {
    "args",
    "msg",
    "name",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "process",
    "processName",
    "message",
    "taskName",
}


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return value if len(value) <= _MAX_STRING_LENGTH else f"{value[:_MAX_STRING_LENGTH]}…"
    if isinstance(value, dict):
        result: Dict[str, Any] = {}
        for idx, (key, nested) in enumerate(value.items()):
            if idx >= _MAX_COLLECTION_ITEMS:
                result["…"] = f"+{len(value) - _MAX_COLLECTION_ITEMS} keys"
                break
            result[str(key)] = _sanitize_field(str(key), nested)
        return result
    if isinstance(value, (list, tuple, set)):
        items = [_sanitize_value(item) for item in list(value)]
        if len(items) > _MAX_COLLECTION_ITEMS:
            items = items[:_MAX_COLLECTION_ITEMS] + ["…"]
        return items
    return value


def _sanitize_field(key: str, value: Any) -> Any:
    lowered = key.lower()
    if any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS):
        return "[redacted]"
    return _sanitize_value(value)


class JSONLogFormatter(logging.Formatter):
    """Emit one JSON object per record, extras included."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
            "logger": record.name,
            "service": _SERVICE_NAME,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _RESERVED or key in payload:
                continue
            payload[key] = _sanitize_field(key, value)
        return json.dumps(payload, separators=(",", ":"), default=str)


def configure_logging() -> logging.Logger:
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    if os.getenv("LOG_JSON", "1") != "0":
        handler.setFormatter(JSONLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or _LOGGER_NAME)
