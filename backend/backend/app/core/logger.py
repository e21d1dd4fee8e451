from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from app.core.config import Settings

SERVICE_NAME = "production-lifecycle"

_EXTRA_FIELDS = ("request_id", "topic", "event_id", "entity", "entity_id", "target", "attempt")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log[field] = getattr(record, field)
        if record.exc_info:
            log["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"plc.{name}")


def configure_logging(settings: Settings) -> logging.Logger:
    """Attach a single stream handler to the ``plc`` logger tree."""
    root = logging.getLogger("plc")
    root.setLevel(settings.log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    root.handlers = [handler]
    root.propagate = False
    return root
