"""
Logging setup for replctl.
Console output on stderr, optional log file.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str,
    log_file: Optional[Path] = None,
    verbose: bool = False,
    level: Optional[str] = None
) -> logging.Logger:
    """
    Create or reconfigure a logger.

    Args:
        name: Logger name
        log_file: Optional file to append log records to
        verbose: Force DEBUG level
        level: Level name from configuration (e.g. 'INFO')

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if verbose:
        logger.setLevel(logging.DEBUG)
    elif level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
