"""
Tests for carerelay.logging_utils.
"""

import logging

import pytest

from carerelay.logging_utils import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_console_only(self, restore_root_logger):
        root = configure_logging("warning")
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_file_handler_creates_directory(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "carerelay.log"
        root = configure_logging("INFO", str(log_file))

        logging.getLogger("carerelay.test").info("relay proposed")
        for handler in root.handlers:
            handler.flush()

        assert len(root.handlers) == 2
        assert "relay proposed" in log_file.read_text(encoding="utf-8")

    def test_urllib3_quieted(self, restore_root_logger):
        configure_logging("DEBUG")
        assert logging.getLogger("urllib3").level == logging.WARNING
