"""Tests for logging configuration."""

import logging
import logging.handlers

from relay.logging_setup import configure_logging


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_console_only_by_default(self):
        configure_logging(level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_file_handler_when_log_dir_given(self, tmp_path):
        configure_logging(level="INFO", log_dir=tmp_path / "logs")

        handlers = logging.getLogger().handlers
        file_handlers = [h for h in handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert (tmp_path / "logs").is_dir()

        for handler in file_handlers:
            handler.close()
        configure_logging(level="INFO")

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()

        assert len(logging.getLogger().handlers) == 1
