import io
import logging
import os
import signal
import sys
import time
from unittest import mock

import pytest

from rtty.logsetup import (
    LOGGER_NAME,
    CallerFormatter,
    enable_debug,
    install_debug_signal,
    setup_logging,
)


class TTYBuffer(io.StringIO):
    def isatty(self):
        return True


class PlainBuffer(io.StringIO):
    def isatty(self):
        return False


@pytest.fixture
def restore_logger():
    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


def test_caller_formatter():
    record = logging.makeLogRecord(
        {"pathname": "/a/b/c.py", "lineno": 12, "msg": "hi", "levelname": "INFO"}
    )
    assert CallerFormatter("%(caller)s %(message)s").format(record) == "c.py:12 hi"


def test_console_output_on_terminal(monkeypatch, restore_logger):
    out = TTYBuffer()
    monkeypatch.setattr(sys, "stdout", out)
    logger = setup_logging(False)
    logging.getLogger(LOGGER_NAME + ".sub").info("hello there")
    logger.debug("hidden message")
    text = out.getvalue()
    assert "hello there" in text
    assert "test_logsetup.py:" in text
    assert "hidden message" not in text


def test_debug_level(monkeypatch, restore_logger):
    monkeypatch.setattr(sys, "stdout", TTYBuffer())
    assert setup_logging(True).level == logging.DEBUG
    assert setup_logging(False).level == logging.INFO


def test_handlers_not_duplicated(monkeypatch, restore_logger):
    monkeypatch.setattr(sys, "stdout", TTYBuffer())
    first = len(setup_logging(False).handlers)
    second = len(setup_logging(False).handlers)
    assert first == second


def test_syslog_added_when_not_terminal(monkeypatch, restore_logger):
    monkeypatch.setattr(sys, "stdout", PlainBuffer())
    with mock.patch("logging.handlers.SysLogHandler") as syslog_cls:
        logger = setup_logging(False)
        instance = syslog_cls.return_value
        assert syslog_cls.call_args.kwargs["address"] == "/dev/log"
        instance.setLevel.assert_called_once_with(logging.INFO)
        assert instance in logger.handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def test_enable_debug(monkeypatch, restore_logger):
    monkeypatch.setattr(sys, "stdout", TTYBuffer())
    logger = setup_logging(False)
    assert logger.level == logging.INFO
    enable_debug()
    assert logger.level == logging.DEBUG


def test_debug_signal(monkeypatch, restore_logger):
    monkeypatch.setattr(sys, "stdout", TTYBuffer())
    logger = setup_logging(False)
    assert logger.level == logging.INFO
    previous = install_debug_signal()
    try:
        os.kill(os.getpid(), signal.SIGUSR1)
        deadline = time.monotonic() + 2
        while logger.level != logging.DEBUG and time.monotonic() < deadline:
            time.sleep(0.01)
        assert logger.level == logging.DEBUG
    finally:
        signal.signal(signal.SIGUSR1, previous)