"""
Structured Logging Configuration Module for BeatMarket

Application-wide logging with either human-readable text or JSON lines on
stdout, Uvicorn integration, and context enrichment through a LoggerAdapter.

Usage:
    from beatmarket.utils.logger import add_log_context, setup_logging

    setup_logging(log_level="info", json_logs=True)

    logger = logging.getLogger(__name__)
    ctx_logger = add_log_context(logger, upload_id="abc123")
    ctx_logger.info("Finalize started")
"""

import json
import logging
import sys

from datetime import UTC, datetime
from typing import Any


LOG_LEVEL_MAP: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Third-party loggers to reduce verbosity
THIRD_PARTY_LOGGERS: list[str] = [
    "uvicorn.access",
    "motor",
    "pymongo",
    "boto3",
    "botocore",
    "s3transfer",
    "urllib3",
    "httpx",
    "httpcore",
    "numba",
    "redis",
    "asyncio",
]

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JSONFormatter(logging.Formatter):
    """
    Logging formatter that renders each record as one JSON object.

    Fields passed through ``extra=`` or a context adapter are collected under
    an ``extra`` key.

    Example output:
        {"timestamp": "2026-01-15T10:30:45.123456+00:00", "level": "INFO",
         "logger": "beatmarket.services.upload_service",
         "message": "Upload finalized", "extra": {"upload_id": "abc123"}}
    """

    # Standard LogRecord attributes to exclude from extra fields
    RESERVED_ATTRS: frozenset[str] = frozenset(
        {
            "args",
            "asctime",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "thread",
            "threadName",
            "taskName",
        }
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self.RESERVED_ATTRS and not key.startswith("_")
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(log_level: str = "info", json_logs: bool = False) -> None:
    """
    Configure the root logger, Uvicorn loggers and third-party noise levels.

    Called once from the FastAPI lifespan.

    Args:
        log_level: Application log level name (case-insensitive).
        json_logs: Emit JSON lines when True, plain text otherwise.
    """
    level = LOG_LEVEL_MAP.get(log_level.upper(), logging.INFO)

    formatter: logging.Formatter
    if json_logs:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for uvicorn_logger_name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(uvicorn_logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    if level > logging.DEBUG:
        for logger_name in THIRD_PARTY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, json=%s", logging.getLevelName(level), json_logs
    )


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges its context into each call's ``extra`` dict."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        for key, value in (self.extra or {}).items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


def add_log_context(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """
    Wrap a logger so every record carries the given context fields.

    Example:
        ctx_logger = add_log_context(logger, upload_id="abc-123", user_id="user-456")
        ctx_logger.info("Starting finalize")
    """
    return ContextLoggerAdapter(logger, context)
