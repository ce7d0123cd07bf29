"""Structured logging for the API service and collector processes."""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from price_tracker.config import settings

# Loggers whose records also go to collection.log
COLLECTION_LOGGERS = ("price_tracker.worker", "price_tracker.ingest", "price_tracker.db")

# Context keys shown in console lines, in this order
CONSOLE_CONTEXT_KEYS = ("collector_id", "job_id", "asin")

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service, timestamp, level and source location."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['service'] = settings.service_name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName


class CollectionFilter(logging.Filter):
    """Pass records from the collection pipeline and job store loggers."""

    def filter(self, record: logging.LogRecord) -> bool:
        return any(
            record.name == prefix or record.name.startswith(prefix + ".")
            for prefix in COLLECTION_LOGGERS
        )


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(base_dir: str | Path | None = None, level: Optional[str] = None):
    """Configure logging for the application.

    Writes human-readable lines to stdout and JSON lines to ``logs/app.log``,
    ``logs/error.log`` and ``logs/collection.log``.

    Args:
        base_dir: Directory that holds the logs/ folder.
                  Falls back to settings.log_dir, then the current working directory.
        level: Root level name; defaults to settings.log_level
    """
    base = base_dir or settings.log_dir or None
    logs_dir = (Path(base) if base else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    level_name = (level or settings.log_level).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_rotating_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_rotating_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    collection_handler = _rotating_handler(logs_dir / "collection.log", logging.INFO, json_formatter)
    collection_handler.addFilter(CollectionFilter())
    root_logger.addHandler(collection_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying job context.

    Context fields become JSON fields through ``extra``; the collector, job
    and ASIN are also prefixed to the message so console lines stay traceable.
    """

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        prefix = " ".join(
            f"{key}={self.extra[key]}"
            for key in CONSOLE_CONTEXT_KEYS
            if self.extra.get(key) is not None
        )
        if prefix:
            msg = f"[{prefix}] {msg}"
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with optional context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context fields (e.g., job_id=42, asin='B0...')

    Returns:
        LoggerAdapter with context
    """
    logger = logging.getLogger(name)
    return LoggerAdapter(logger, context)
