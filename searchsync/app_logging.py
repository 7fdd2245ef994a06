"""Logging setup for the sync poller.

This module centralizes logging configuration for a poller process. It provides:

- A JSON formatter (opt-in via LOG_JSON) or a human-readable formatter. Both
  carry the sync context (connection, table, field, config id, stage) when a
  record was logged with ``extra=``.
- Timed rotation of the ``sync.log`` file, honoring retention and timezone
  options.
- ``scrub`` to mask credentials before settings or sink payloads are logged.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_RETENTION_DAYS,
LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler

LOGGER_NAME = "searchsync"
CONTEXT_FIELDS = ("connection", "table", "field", "config_id", "stage")


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_record[name] = value
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends sync context as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]
        if not pairs:
            return message
        return f"{message} [{' '.join(pairs)}]"


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return ContextFormatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "api-key",
    "api_key",
    "password",
    "token",
    "access_token",
}


def scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if str(k).lower() in SENSITIVE_FIELDS else scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [scrub(v) for v in data]
    return data


def init_logging(*, console: bool = False) -> logging.Logger:
    """Initialise the ``searchsync`` logger and return it."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    if not any(isinstance(h, TimedRotatingFileHandler) for h in logger.handlers):
        handler = TimedRotatingFileHandler(
            os.path.join(log_dir, "sync.log"),
            when="midnight",
            backupCount=retention_days,
            utc=rotate_utc,
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if console and not any(
        type(h) is logging.StreamHandler for h in logger.handlers
    ):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    logger.setLevel(log_level)
    return logger


__all__ = ["JsonFormatter", "ContextFormatter", "init_logging", "scrub"]
