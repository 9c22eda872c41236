"""
Logging setup shared by every historian module.

All loggers use one line format:
    %(asctime)s - %(name)s - %(levelname)s - %(message)s

Environment:
    LOG_LEVEL    default level name (INFO)
    LOG_DIR      directory for rotating log files (logs)
    LOG_TO_FILE  set to false/0/no/off for console-only output
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5


def _file_logging_enabled() -> bool:
    return os.getenv('LOG_TO_FILE', 'true').strip().lower() not in ('0', 'false', 'no', 'off')


def _default_log_file(logger_name: str) -> Path:
    file_stem = logger_name.replace('.', '_').replace('/', '_')
    return Path(os.getenv('LOG_DIR', 'logs')) / f"{file_stem}.log"


def _build_handlers(
    logger_name: str,
    log_file: Optional[str],
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if not _file_logging_enabled():
        return handlers

    path = Path(log_file) if log_file else _default_log_file(logger_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    handlers.append(logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    ))
    return handlers


def setup_logging(
    logger_name: str,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> logging.Logger:
    """
    Configure the named logger with a console handler and, unless disabled,
    a rotating file under LOG_DIR.

    Args:
        logger_name: Usually __name__
        log_level: Level name; LOG_LEVEL and then INFO when omitted
        log_file: Explicit log file path instead of LOG_DIR/<logger_name>.log
        max_bytes: Rotation size per file
        backup_count: Rotated files kept

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    # Calling setup twice must not duplicate output
    logger.handlers.clear()

    level = getattr(logging, (log_level or os.getenv('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in _build_handlers(logger_name, log_file, max_bytes, backup_count):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(logger_name: str) -> logging.Logger:
    """Return the named logger, running setup_logging() the first time."""
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger
    return setup_logging(logger_name)
