from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_log_context
from app.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
_AUTOMATION_FIELDS = frozenset(
    {
        "event_type",
        "event_id",
        "organization_id",
        "workflow_id",
        "run_id",
        "step_id",
        "step_type",
        "attempt",
        "trigger_depth",
        "max_depth",
        "reason",
        "status",
        "status_code_returned",
        "will_retry",
        "matched_count",
        "resumed_count",
        "error",
    }
)
_KNOWN_FIELDS = _HTTP_FIELDS | _AUTOMATION_FIELDS

MAX_ERROR_LENGTH = 500

# One log line per outbound webhook or provider call is too chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def _stamp_context(record: logging.LogRecord) -> None:
    context = get_log_context()
    if not getattr(record, "correlation_id", None):
        record.correlation_id = context["correlation_id"]
    # Only records written while a run executes carry a depth.
    if getattr(record, "trigger_depth", None) is None and context["trigger_depth"] is not None:
        record.trigger_depth = context["trigger_depth"]


class AutomationContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _stamp_context(record)
    return record


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Whitelisted ``extra`` values of a record, with long errors clipped."""
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS and value is not None
    }
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "text":
        return logging.Formatter(TEXT_FORMAT)
    return JsonLogFormatter()


def configure_logging() -> None:
    """Install the stdout handler for the api process and the celery worker.

    ``LOG_FORMAT`` picks single-line JSON (default) or plain text for local
    runs. Safe to call from both entry points; only the first call applies.
    """
    root_logger = logging.getLogger()
    if getattr(root_logger, "_automations_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(settings.log_format))
    handler.addFilter(AutomationContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    root_logger._automations_configured = True  # type: ignore[attr-defined]
