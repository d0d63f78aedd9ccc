"""
Structured JSON logging.

JSON-formatted logs in production, plain text locally.
Includes user_id, chat_id, booking_id and workflow_state when passed via extra.

Usage:
    from logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.info("Booking created", extra={"user_id": 123, "booking_id": "abc123"})
"""
import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Any

CONTEXT_FIELDS = ("user_id", "chat_id", "booking_id", "workflow_state", "request_id")


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def _json_wanted() -> bool:
    if os.getenv("LOG_JSON", "").strip().lower() in ("1", "true", "yes"):
        return True
    return bool(os.getenv("RAILWAY_ENVIRONMENT"))


def setup_logging(json_format: bool | None = None, level: int = logging.INFO):
    """
    Configure root logger.

    Args:
        json_format: Use JSON format (default: LOG_JSON / RAILWAY_ENVIRONMENT)
        level: Logging level
    """
    if json_format is None:
        json_format = _json_wanted()

    handler = logging.StreamHandler(sys.stdout)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Reduce noise from libraries
    logging.getLogger("aiogram").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
