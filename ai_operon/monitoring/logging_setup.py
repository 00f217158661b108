"""
Logging setup
Rich console output plus a rotating log file for the ai_operon logger tree
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from ai_operon.core.config import config

ROOT_LOGGER = "ai_operon"
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the ai_operon logger once.

    Args:
        level: Log level name, defaults to logging.level
        log_file: Log file path, defaults to logging.file (empty disables the file)
    """
    global _configured
    logger = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return logger

    level = (level or config.get("logging.level", "INFO")).upper()
    log_file = log_file if log_file is not None else config.get("logging.file")

    logger.setLevel(level)
    logger.propagate = False

    console = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    console.setLevel(level)
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    _configured = True
    return logger
