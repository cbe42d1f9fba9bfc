from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


# Structured keys passed through `extra=` that end up in the "fields" object.
CONTEXT_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "job_type",
    "status",
    "entity_type",
    "entity_id",
    "row_number",
    "event_name",
    "notification_type",
    "user_id",
    "count",
    "error",
)

# Third-party loggers that would duplicate app.request or flood stdout.
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
}

_MAX_ERROR_LENGTH = 500


def _context_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: record.__dict__[key] for key in CONTEXT_FIELDS if key in record.__dict__}
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_MAX_ERROR_LENGTH]
    return fields


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: envelope keys first, context under "fields"."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if self.service:
            payload["service"] = self.service

        fields = _context_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(f"{key}={value}" for key, value in _context_fields(record).items())
        correlation_id = getattr(record, "correlation_id", None) or "-"
        return f"{line} [{correlation_id}] {fields}".rstrip()


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "text":
        return TextLogFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    return JsonLogFormatter(service=get_settings().app_name)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crosssell_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(os.getenv("LOG_FORMAT", "json").lower()))
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, level))
    root_logger._crosssell_configured = True  # type: ignore[attr-defined]
