from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from opportunity_automation.context import get_correlation_id
from opportunity_automation.core.config import Settings, get_settings


SERVICE_LOG_NAME = "opportunity-automation"

# Extras outside these groups are dropped.
_FIELD_GROUPS: dict[str, frozenset[str]] = {
    "http": frozenset({"method", "path", "status_code", "duration_ms"}),
    "trigger": frozenset({"phase", "rule", "transaction_id"}),
    "batch": frozenset({"operation", "record_count", "rejected_count", "skipped_count"}),
    "fields": frozenset({"message_count", "opportunity_id", "recipient", "event_name", "error"}),
}
_MAX_ERROR_LENGTH = 500


def _record_factory_with_correlation(default_factory: Any) -> Any:
    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = default_factory(*args, **kwargs)
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return record

    return factory


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with extras grouped by concern.

    Unknown extras are dropped so arbitrary record attributes never reach the sink.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_LOG_NAME,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }

        for group, keys in _FIELD_GROUPS.items():
            values = {key: value for key, value in record.__dict__.items() if key in keys}
            if values:
                payload[group] = values

        error_value = payload.get("fields", {}).get("error")
        if isinstance(error_value, str):
            payload["fields"]["error"] = error_value[:_MAX_ERROR_LENGTH]

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_opportunity_automation_configured", False):
        return

    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory_with_correlation(logging.getLogRecordFactory()))
    root_logger.addHandler(handler)
    root_logger._opportunity_automation_configured = True  # type: ignore[attr-defined]
