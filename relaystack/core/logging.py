"""Structured JSON logging for RelayStack."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

# Fields every component attaches when it knows them; emitted first, in order.
CONTEXT_FIELDS = (
    "event_id",
    "event_type",
    "correlation_id",
    "channel",
    "provider",
    "handler",
    "job_id",
    "attempt",
)

ROOT_LOGGER = "relaystack"


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            # Fallback to safe string representation if serialization fails
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int | None) -> None:
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    if level is not None:
        logger.setLevel(level)


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Configure the package root logger with JSON output.

    Component loggers (``relaystack.<component>``) propagate to it.

    Args:
        level: Logging level, as an int or a level name.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger = logging.getLogger(ROOT_LOGGER)
    _setup_json_handler(logger, level)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a component logger under the package root.

    Args:
        name: Component name, e.g. ``"orchestrator"``. A fully qualified
            ``relaystack.*`` name is used as-is.
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
