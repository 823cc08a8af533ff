"""Tests for logging setup."""

from __future__ import annotations

import logging

import pytest

from aistack import logging_config


@pytest.fixture
def clean_root():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.handlers, root.level = saved[0], saved[1]


def test_console_only_without_log_dir(clean_root):
    logging_config.setup_logging(None, level=logging.WARNING)

    assert len(clean_root.handlers) == 1
    assert clean_root.handlers[0].level == logging.WARNING
    assert clean_root.level == logging.WARNING


def test_file_handler_written_fresh(clean_root, tmp_path):
    log_file = tmp_path / logging_config.LOG_FILE_NAME
    log_file.write_text("stale\n", encoding="utf-8")

    logging_config.setup_logging(tmp_path)
    logging.getLogger("aistack.test").debug("fresh line")
    for handler in clean_root.handlers:
        handler.flush()

    content = log_file.read_text(encoding="utf-8")
    assert "stale" not in content
    assert "fresh line" in content
    assert clean_root.level == logging.DEBUG


def test_append_mode_from_environment(clean_root, tmp_path, monkeypatch):
    monkeypatch.setenv("AISTACK_LOG_APPEND", "1")
    log_file = tmp_path / logging_config.LOG_FILE_NAME
    log_file.write_text("kept\n", encoding="utf-8")

    logging_config.setup_logging(tmp_path)
    for handler in clean_root.handlers:
        handler.flush()

    assert "kept" in log_file.read_text(encoding="utf-8")


def test_repeated_setup_replaces_handlers(clean_root, tmp_path):
    logging_config.setup_logging(tmp_path)
    logging_config.setup_logging(tmp_path)

    assert len(clean_root.handlers) == 2


def test_user_friendly_console_format(clean_root):
    logging_config.setup_logging(None, user_friendly=True)

    assert clean_root.handlers[0].formatter._fmt == "%(message)s"


def test_noisy_libraries_quieted(clean_root):
    logging_config.setup_logging(None)

    assert logging.getLogger("aiohttp").level == logging.WARNING
