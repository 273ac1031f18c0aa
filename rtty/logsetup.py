"""Logging configuration: console output, syslog and a debug switch."""

from __future__ import annotations

import logging
import logging.handlers
import os
import signal
import sys

LOGGER_NAME = "rtty"
SYSLOG_ADDRESS = "/dev/log"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-5s %(caller)s > %(message)s"
SYSLOG_FORMAT = "%(caller)s |%(message)s"

_installed: list[logging.Handler] = []


class CallerFormatter(logging.Formatter):
    """Formatter that provides ``%(caller)s`` as ``file.py:line``."""

    def format(self, record: logging.LogRecord) -> str:
        record.caller = f"{os.path.basename(record.pathname)}:{record.lineno}"
        return super().format(record)


def _is_terminal(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def setup_logging(debug: bool = False) -> logging.Logger:
    """Log to stdout, and also to syslog when stdout is not a terminal."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in _installed:
        logger.removeHandler(handler)
        handler.close()
    _installed.clear()

    level = logging.DEBUG if debug else logging.INFO

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(CallerFormatter(CONSOLE_FORMAT))
    handlers: list[logging.Handler] = [console]

    if not _is_terminal(sys.stdout):
        syslog = logging.handlers.SysLogHandler(address=SYSLOG_ADDRESS)
        syslog.ident = f"{LOGGER_NAME}: "
        syslog.setLevel(level)
        syslog.setFormatter(CallerFormatter(SYSLOG_FORMAT))
        handlers.append(syslog)

    for handler in handlers:
        logger.addHandler(handler)
        _installed.append(handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger


def enable_debug() -> None:
    """Switch the package's logging to debug level."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.debug("Debug mode enabled")


def install_debug_signal():
    """Enable debug logging on SIGUSR1; returns the previous handler."""
    return signal.signal(signal.SIGUSR1, lambda signum, frame: enable_debug())