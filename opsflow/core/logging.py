import json
import logging
import os
from datetime import datetime, timezone

_STANDARD_RECORD_FIELDS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Promoted out of "extra" to top-level keys.
_CORRELATION_FIELDS = ("instance_id", "template_id", "step_number", "event_kind", "event_outbox_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, timestamped when the record was created."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_RECORD_FIELDS}
        for field in _CORRELATION_FIELDS:
            if field in extras:
                payload[field] = extras.pop(field)
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        if record.stack_info:
            payload["stack_info"] = record.stack_info

        return json.dumps(payload, default=str)


def configure_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())
    root_logger.setLevel(level)

    for handler in root_logger.handlers:
        handler.setFormatter(JsonFormatter())
