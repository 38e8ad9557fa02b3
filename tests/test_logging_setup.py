"""Tests for logging configuration helpers."""

import logging

import pytest

from matrix_host.core.sandbox import get_log_queue
from matrix_host.logging_setup import (
    LOG_FORMAT,
    configure_logging,
    forward_child_logs,
    stop_forwarding,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestConfigureLogging:
    def test_level_by_name(self, restore_root_logger):
        configure_logging("debug")

        assert restore_root_logger.level == logging.DEBUG
        assert restore_root_logger.handlers[0].formatter._fmt == LOG_FORMAT

    def test_level_by_number(self, restore_root_logger):
        configure_logging(logging.WARNING)
        assert restore_root_logger.level == logging.WARNING


class TestChildLogForwarding:
    def test_forward_and_stop(self, restore_root_logger):
        configure_logging("info")

        listener = forward_child_logs()
        try:
            assert get_log_queue() is not None
        finally:
            stop_forwarding(listener)

        assert get_log_queue() is None
