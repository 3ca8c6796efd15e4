"""Tests for protech.logging_config module."""

import logging

import pytest

from protech.logging_config import (
    log_migration,
    log_queue,
    log_sync,
    log_sync_event,
    setup_protech_logging,
)


@pytest.fixture(autouse=True)
def clean_protech_logger():
    """Remove all handlers from the protech logger before/after each test."""
    logger = logging.getLogger("protech")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
    yield
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)


@pytest.fixture
def log_dir(protech_home):
    return protech_home / "logs"


class TestSetupProtechLogging:
    """Tests for setup_protech_logging."""

    def test_returns_logger(self, log_dir):
        """Should return the protech logger."""
        logger = setup_protech_logging("shop-1")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "protech"

    def test_creates_log_directory(self, log_dir):
        assert not log_dir.exists()
        setup_protech_logging("shop-1")
        assert log_dir.exists()

    def test_log_file_named_with_date(self, log_dir):
        setup_protech_logging("shop-1")
        log_files = list(log_dir.glob("local-*.log"))
        assert len(log_files) == 1

    def test_default_level_info(self, log_dir):
        logger = setup_protech_logging("shop-1")
        assert logger.level == logging.INFO

    def test_custom_level_case_insensitive(self, log_dir):
        logger = setup_protech_logging("shop-1", level="warning")
        assert logger.level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, log_dir):
        logger = setup_protech_logging("shop-1", level="CHATTY")
        assert logger.level == logging.INFO

    def test_no_duplicate_file_handlers(self, log_dir):
        """Calling setup twice should not stack file handlers."""
        setup_protech_logging("shop-1")
        logger = setup_protech_logging("shop-1")
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

    def test_debug_adds_console_handler(self, log_dir):
        logger = setup_protech_logging("shop-1", level="DEBUG")
        consoles = [
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(consoles) == 1

    def test_info_has_no_console_handler(self, log_dir):
        logger = setup_protech_logging("shop-1")
        consoles = [
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert consoles == []

    def test_child_loggers_write_to_file(self, log_dir):
        setup_protech_logging("shop-1")
        logging.getLogger("protech.sync.queue").info("queued upload for customer/c1")
        for handler in logging.getLogger("protech").handlers:
            handler.flush()
        content = next(log_dir.glob("local-*.log")).read_text()
        assert "queued upload for customer/c1" in content
        assert "protech.sync.queue" in content


class TestSyncEventLog:
    """Tests for the one-line-per-event audit log."""

    def _events(self, log_dir):
        files = list(log_dir.glob("sync-events-*.log"))
        assert len(files) == 1
        return files[0].read_text().splitlines()

    def test_log_sync_event_format(self, log_dir):
        log_sync_event("custom", "details here", shop_id="shop-9")
        (line,) = self._events(log_dir)
        parts = line.split(" | ")
        assert parts[1:] == ["custom", "shop=shop-9", "details here"]

    def test_log_sync(self, log_dir):
        log_sync("shop-1", "push", 4, errors=1)
        (line,) = self._events(log_dir)
        assert "| sync |" in line
        assert "direction=push, count=4, errors=1" in line

    def test_log_queue(self, log_dir):
        log_queue("shop-1", processed=3, pending=2, failed=1)
        (line,) = self._events(log_dir)
        assert "processed=3, pending=2, failed=1" in line

    def test_log_migration(self, log_dir):
        log_migration("shop-1", "completed", 10, 0)
        (line,) = self._events(log_dir)
        assert "| migration |" in line
        assert "phase=completed, migrated=10, failed=0" in line

    def test_events_append(self, log_dir):
        log_sync("shop-1", "pull", 1)
        log_sync("shop-1", "pull", 2)
        assert len(self._events(log_dir)) == 2
