"""Logging Configuration - Console and log-file output for Touch Guard

Everything logs under the `touchguard` logger. The console shows INFO by
default (training batches, loop start/stop, snapshot restore). A log file,
when given, always records DEBUG so rejected operations and per-frame detail
can be inspected after a session without cluttering the terminal.

Usage:
    from touchguard.logging_config import setup_logging, set_debug

    setup_logging(log_file="logs/guard.log")
    set_debug(True)   # console shows DEBUG too
"""

import logging
import sys
from pathlib import Path
from typing import Optional

PACKAGE_NAME = 'touchguard'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%H:%M:%S'

# Level the console returns to when debug output is switched off
_console_level = logging.INFO


def _console_handlers(logger: logging.Logger):
    return [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the touchguard logger

    Calling it again replaces the previous handlers.

    Args:
        level: Console level
        log_file: Also write DEBUG and above to this file

    Returns:
        The `touchguard` logger
    """
    global _console_level
    _console_level = level

    logger = logging.getLogger(PACKAGE_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(level)

    logger.propagate = False
    return logger


def set_debug(enabled: bool):
    """Switch DEBUG output on the console on or off at runtime"""
    logger = logging.getLogger(PACKAGE_NAME)
    console_level = logging.DEBUG if enabled else _console_level
    for handler in _console_handlers(logger):
        handler.setLevel(console_level)

    has_file = len(_console_handlers(logger)) != len(logger.handlers)
    logger.setLevel(logging.DEBUG if has_file else console_level)
