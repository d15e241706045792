from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from librarian.context import get_log_context
from librarian.core.config import Settings, get_settings


# Only these extras reach the JSON output; anything else passed via ``extra``
# (row payloads, credentials) is dropped.
LOG_FIELDS = frozenset(
    {
        "entity",
        "operation",
        "decision",
        "policy",
        "user_id",
        "loan_id",
        "from_status",
        "to_status",
        "duration_ms",
        "count",
        "error",
    }
)


class LogContextFilter(logging.Filter):
    """Stamp records with the correlation id and acting principal of the current unit of work."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str | None = None, error_max_chars: int = 500) -> None:
        super().__init__()
        self.service = service
        self.error_max_chars = error_max_chars

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
        payload["fields"] = self._fields(record)
        return json.dumps(payload, default=str)

    def _fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields = {
            key: value
            for key, value in vars(record).items()
            if key in LOG_FIELDS and value is not None
        }
        error = fields.get("error")
        if isinstance(error, str) and len(error) > self.error_max_chars:
            fields["error"] = error[: self.error_max_chars]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return fields


def configure_logging(settings: Settings | None = None, stream: TextIO | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_librarian_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(settings.service_name, settings.log_error_max_chars))
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    root_logger._librarian_configured = True  # type: ignore[attr-defined]
