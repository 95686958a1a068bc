from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from workhub.context import get_log_context


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_CONTEXT_FIELDS = ("correlation_id", "scope")
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "field_id",
    "field_type",
    "reason",
    "entity_id",
    "relationship_name",
    "cycle",
    "is_fallback",
    "recomputed",
    "event_name",
    "event_payload",
    "error",
}
_MAX_FIELD_CHARS = 500


def _apply_log_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if not getattr(record, key, None):
            setattr(record, key, value)


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _apply_log_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # extras may still carry "scope", so only the correlation id is stamped here
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    record.correlation_id = get_log_context()["correlation_id"]
    return record


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_FIELD_CHARS:
        return value[:_MAX_FIELD_CHARS]
    return value


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: context keys at the top level, known extras under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            payload[key] = getattr(record, key, None)

        fields = {
            key: _clip(value)
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("cycle"), list):
            fields["cycle"] = " -> ".join(str(item) for item in fields["cycle"])
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_workhub_configured", False):
        return

    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._workhub_configured = True  # type: ignore[attr-defined]
