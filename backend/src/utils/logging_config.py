"""
Structured logging configuration for the chapter events backend.

Provides JSON-formatted logging with file rotation for production environments
and human-readable console logging for development.

Loggers:
- api: HTTP requests, responses, error translation
- services: Recurrence, RSVP and series editing operations
- db: Database sessions and transactions
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional


LOGGER_NAMES = ("api", "services", "db")


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Each record includes timestamp, level, logger, message, module,
    function and line, plus exception text and any fields passed via
    extra={...}.
    """

    # Attributes every LogRecord carries; anything else came from extra={...}
    RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in self.RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for console output in development.

    Format: [TIMESTAMP] LEVEL - LOGGER - MESSAGE
    Example: [2025-12-29 10:30:45] INFO - chapter_events.services - Split series ser_xxx at 2024-01-15
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def _get_log_level() -> int:
    """
    Get log level from environment variable.

    Environment Variables:
        CHAPTER_EVENTS_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL (default: INFO)
    """
    level_str = os.environ.get("CHAPTER_EVENTS_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def _get_log_dir() -> Path:
    """
    Get log directory path, creating it if needed.

    Environment Variables:
        CHAPTER_EVENTS_LOG_DIR: Log directory (default: ./logs)
    """
    log_dir = Path(os.environ.get("CHAPTER_EVENTS_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _is_production() -> bool:
    """
    Check if running in production.

    Environment Variables:
        CHAPTER_EVENTS_ENV: production, development or test (default: development)
    """
    return os.environ.get("CHAPTER_EVENTS_ENV", "development").lower() == "production"


def configure_logging() -> Dict[str, logging.Logger]:
    """
    Configure structured logging for the backend.

    Behavior:
    - Production (CHAPTER_EVENTS_ENV=production):
      * JSON-formatted logs to rotating files, one per logger
      * 10MB max size, 5 backup files
    - Development (default):
      * Human-readable console output

    Returns:
        Dictionary mapping logger names (api, services, db) to Logger instances
    """
    log_level = _get_log_level()
    is_prod = _is_production()
    log_dir = _get_log_dir() if is_prod else None

    loggers = {}
    for logger_name in LOGGER_NAMES:
        logger = logging.getLogger(f"chapter_events.{logger_name}")
        logger.setLevel(log_level)
        logger.propagate = False
        logger.handlers.clear()

        if is_prod:
            handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{logger_name}.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8"
            )
            handler.setFormatter(JSONFormatter())
        else:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(ConsoleFormatter())
        handler.setLevel(log_level)
        logger.addHandler(handler)

        loggers[logger_name] = logger

    return loggers


# Singleton logger instances
_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger by name.

    Args:
        name: Logger name (api, services, db)

    Raises:
        ValueError: If logger name is not recognized

    Example:
        >>> logger = get_logger("services")
        >>> logger.info("Split series", extra={"series_guid": "ser_xxx"})
    """
    global _loggers

    if _loggers is None:
        _loggers = configure_logging()

    if name not in _loggers:
        raise ValueError(
            f"Unknown logger name: {name}. "
            f"Valid names: {', '.join(_loggers.keys())}"
        )

    return _loggers[name]


def init_logging() -> Dict[str, logging.Logger]:
    """Initialize logging configuration (called on application startup)."""
    global _loggers
    _loggers = configure_logging()
    return _loggers
