"""Structured JSON logging for sync runs"""

import json
import logging
import logging.config
import os
import uuid
from datetime import datetime, timezone

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def setup_logging(level: str | None = None) -> str:
    """
    Configures JSON structured logging on stdout.
    Returns a short run_id for correlating the entries of one update.
    """
    run_id = os.getenv("TRAILER_RUN_ID", str(uuid.uuid4())[:8])

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "trailer_sync.core.logging_config.JsonFormatter",
                "run_id": run_id,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level or os.getenv("LOG_LEVEL", "INFO"),
            "handlers": ["console"],
        },
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
        },
    }

    logging.config.dictConfig(config)
    return run_id


class JsonFormatter(logging.Formatter):
    """
    Outputs log records as one JSON object per line.
    Includes run_id, timestamp, severity, logger, message and any extra fields.
    """

    def __init__(self, run_id: str = "", *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": self.run_id,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_entry:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)
