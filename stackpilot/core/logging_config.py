"""Logging configuration: structlog over stdlib logging with a rotating durable file."""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from ..constants import DURABLE_LOGGER_NAME, LOG_FILE_NAME


class DurableChannelFilter(logging.Filter):
    """Pass every record from the stack logger, others only from ``level`` up."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == DURABLE_LOGGER_NAME or record.levelno >= self.level


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Setup the durable log sink with automatic truncation.

    Every structlog logger in the package, including the stack logger's
    durable channel, ends up in ``engine.log`` as JSON. Nothing is written to
    the console here: user-facing output is the stack logger's job.

    Args:
        log_dir: Directory for the log file
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    # Clear any existing handlers to prevent duplicates
    logging.getLogger().handlers.clear()

    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=0,  # Don't keep old files, just truncate
        encoding="utf-8",
    )
    # The stack logger's durable channel keeps every level; other loggers honor log_level
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(DurableChannelFilter(log_level_num))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_num)
    root_logger.addHandler(file_handler)
    logging.getLogger(DURABLE_LOGGER_NAME).setLevel(logging.DEBUG)

    from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
    file_handler.setFormatter(ProcessorFormatter(processor=structlog.processors.JSONRenderer()))

    logger = structlog.get_logger("stackpilot")
    logger.info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
        engine_log=str(log_dir / LOG_FILE_NAME),
    )
