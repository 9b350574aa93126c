"""
Structured Logging Setup

Consistent logging configuration across all kvmirror components.
Uses JSON format for structured logs in production.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        service_name: Name of the component (e.g., "config.watcher", "database.pool")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"kvmirror.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from KVMIRROR_LOG_LEVEL / KVMIRROR_LOG_FORMAT.
    """
    log_level = os.environ.get("KVMIRROR_LOG_LEVEL", "INFO")
    json_format = os.environ.get("KVMIRROR_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every kvmirror logger created so far (CLI --verbose)."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("kvmirror.") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric_level)
            for handler in logger.handlers:
                handler.setLevel(numeric_level)


def log_change_event(logger: logging.Logger, event: Any) -> None:
    """Log a dispatched Put/Delete event"""
    value = getattr(event, "value", None)
    if value is None:
        logger.debug(
            f"Delete {event.key}",
            extra={"event": "delete", "key": event.key},
        )
    else:
        logger.debug(
            f"Put {event.key} = {value}",
            extra={"event": "put", "key": event.key, "value": value},
        )


def log_sync_result(
    logger: logging.Logger,
    namespace: str,
    put_count: int,
    delete_count: int,
    execution_time_ms: float,
) -> None:
    """Log the outcome of a sync run"""
    if put_count or delete_count:
        logger.info(
            f"Sync {namespace}: puts={put_count}, deletes={delete_count}, "
            f"exec={execution_time_ms:.0f}ms",
            extra={
                "namespace": namespace,
                "put_count": put_count,
                "delete_count": delete_count,
                "execution_time_ms": execution_time_ms,
            },
        )
    else:
        logger.info(
            f"Sync {namespace}: already up to date",
            extra={"namespace": namespace, "execution_time_ms": execution_time_ms},
        )
