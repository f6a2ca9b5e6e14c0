"""
Logging configuration.

- Console handler with a coloured, human-readable format for local work.
- Rotating JSON-lines file (``marketplace.log``) for log aggregation.
- Separate rotating error-only file (``marketplace-error.log``) for alerting.

Services attach domain context through ``extra=`` (``entity``, ``entity_id``,
``wallet_id``, ``amount``, ``status``); the JSON formatter lifts those keys
into the log line so movements of money can be queried per wallet or contract.

Call :func:`setup_logging` once at start-up (``MarketplaceCore.startup`` does).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from marketplace.core.config import Settings, settings as default_settings

CONTEXT_FIELDS = ("entity", "entity_id", "wallet_id", "amount", "status", "request_id")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in CONTEXT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for terminals."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        entity = getattr(record, "entity", None)
        entity_id = getattr(record, "entity_id", None)
        ctx = f" [{entity}:{entity_id}]" if entity is not None else ""

        line = (
            f"{timestamp} | {colour}{record.levelname:<8}{self.RESET} | "
            f"{record.name}{ctx} | {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Configure the root logger with console + rotating file handlers.

    Idempotent: returns immediately if the root logger already has handlers.
    """
    config = config or default_settings
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    level = (
        logging.DEBUG
        if config.DEBUG
        else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    )
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    os.makedirs(config.LOG_DIR, exist_ok=True)
    log_file = os.path.join(config.LOG_DIR, "marketplace.log")
    file_handler = RotatingFileHandler(
        filename=log_file,
        maxBytes=config.LOG_FILE_MAX_BYTES,
        backupCount=config.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        filename=os.path.join(config.LOG_DIR, "marketplace-error.log"),
        maxBytes=config.LOG_FILE_MAX_BYTES,
        backupCount=config.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(error_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if config.DEBUG else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized: level=%s, file=%s",
        logging.getLevelName(level),
        log_file,
    )
