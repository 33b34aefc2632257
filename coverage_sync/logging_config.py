"""
Root logger setup for the API server and the command line.

Both entry points load :class:`~coverage_sync.config.Settings` first and pass
it here, so CS_LOG_LEVEL, CS_LOG_FILE, CS_LOG_MAX_BYTES and
CS_LOG_BACKUP_COUNT (or their YAML keys) apply to either one.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

from .config import Settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _file_handler(settings: Settings) -> logging.Handler:
    path = Path(settings.log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )


def configure_logging(settings: Settings, level: str | None = None) -> logging.Logger:
    """
    Point the root logger at stdout and, when ``settings.log_file`` is set,
    a rotating file next to it.

    Args:
        settings: Loaded service settings
        level: Overrides ``settings.log_level`` (the CLI's --verbose flag)

    Returns:
        The root logger
    """
    numeric_level = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(_file_handler(settings))

    formatter = logging.Formatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # ccxt logs every request at DEBUG
    logging.getLogger("ccxt").setLevel(max(numeric_level, logging.INFO))

    return root_logger
