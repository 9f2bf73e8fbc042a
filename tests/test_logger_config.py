"""Tests for logger_config module."""

import logging
import logging.handlers
import os
from pathlib import Path
from unittest import mock

import pytest

from swipe_analysis.logger_config import (
    LOG_FILE_ENV_VAR,
    NOISY_LOGGERS,
    get_log_level,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestGetLogLevel:
    """Tests for get_log_level function."""

    def test_default_is_info(self):
        """Default log level is INFO when env var not set."""
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_log_level() == logging.INFO

    def test_debug_level(self):
        with mock.patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}):
            assert get_log_level() == logging.DEBUG

    def test_warning_level(self):
        with mock.patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
            assert get_log_level() == logging.WARNING

    def test_case_insensitive(self):
        with mock.patch.dict(os.environ, {"LOG_LEVEL": "error"}):
            assert get_log_level() == logging.ERROR

    def test_invalid_level_falls_back_to_info(self):
        with mock.patch.dict(os.environ, {"LOG_LEVEL": "LOUD"}):
            assert get_log_level() == logging.INFO

        with mock.patch.dict(os.environ, {"LOG_LEVEL": ""}):
            assert get_log_level() == logging.INFO


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_custom_level(self):
        setup_logging(level=logging.DEBUG)
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_reads_env_level(self):
        with mock.patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
            setup_logging()
        assert logging.getLogger().level == logging.WARNING

    def test_setup_logging_is_repeatable(self):
        """Calling twice must not stack console handlers."""
        setup_logging(level=logging.INFO)
        setup_logging(level=logging.INFO)
        stream_handlers = [
            h
            for h in logging.getLogger().handlers
            if type(h) is logging.StreamHandler
        ]
        assert len(stream_handlers) == 1

    def test_noisy_loggers_quieted(self):
        setup_logging(level=logging.INFO)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_noisy_loggers_follow_debug(self):
        setup_logging(level=logging.DEBUG)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.DEBUG

    def test_log_file_handler(self, tmp_path: Path):
        log_file = tmp_path / "ingest.log"
        setup_logging(level=logging.INFO, log_file=str(log_file))

        file_handlers = [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert len(file_handlers) == 1

        logging.getLogger("swipe_analysis.test").info("hello from test")
        file_handlers[0].flush()
        assert "hello from test" in log_file.read_text()

    def test_log_file_from_env(self, tmp_path: Path):
        log_file = tmp_path / "env.log"
        with mock.patch.dict(os.environ, {LOG_FILE_ENV_VAR: str(log_file)}):
            setup_logging(level=logging.INFO)
        assert any(
            isinstance(h, logging.handlers.RotatingFileHandler)
            for h in logging.getLogger().handlers
        )
