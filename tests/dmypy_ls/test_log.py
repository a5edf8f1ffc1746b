"""Tests for logging setup."""

import logging

import pytest

from dmypy_ls.log import resolve_level, setup_logging


@pytest.fixture
def package_logger():
    """The package logger, restored after the test."""
    logger = logging.getLogger("dmypy_ls")
    handlers, level = list(logger.handlers), logger.level
    logger.handlers.clear()
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)


class TestResolveLevel:
    """Level selection from argument, environment and default."""

    def test_default(self, monkeypatch):
        """INFO when nothing is configured."""
        monkeypatch.delenv("DMYPYLS_LOG_LEVEL", raising=False)
        assert resolve_level() == logging.INFO

    def test_environment(self, monkeypatch):
        """$DMYPYLS_LOG_LEVEL is honoured, case-insensitively."""
        monkeypatch.setenv("DMYPYLS_LOG_LEVEL", "debug")
        assert resolve_level() == logging.DEBUG

    def test_argument_wins(self, monkeypatch):
        """An explicit level overrides the environment."""
        monkeypatch.setenv("DMYPYLS_LOG_LEVEL", "debug")
        assert resolve_level("warning") == logging.WARNING

    def test_unknown_name(self, monkeypatch):
        """Unknown level names fall back to INFO."""
        monkeypatch.delenv("DMYPYLS_LOG_LEVEL", raising=False)
        assert resolve_level("chatty") == logging.INFO


class TestSetupLogging:
    """Rotating file handler on the package logger."""

    def test_creates_log_file(self, tmp_path, package_logger):
        """The log directory is created and records reach the file."""
        log_path = tmp_path / "state" / "dmypyls.log"
        setup_logging(log_path, "INFO")
        logging.getLogger("dmypy_ls.test").info("hello from the test")
        for handler in package_logger.handlers:
            handler.flush()
        assert "hello from the test" in log_path.read_text()

    def test_idempotent(self, tmp_path, package_logger):
        """A second call does not attach another handler."""
        setup_logging(tmp_path / "a.log")
        setup_logging(tmp_path / "b.log")
        assert len(package_logger.handlers) == 1
