"""
Unit Tests — Logging Setup
==========================
"""
import io
import logging
import pytest

from cirunner.utils.logging_config import (
    ColoredFormatter,
    log_file_path,
    setup_logging,
    wants_color,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(level, msg="hello"):
    return logging.LogRecord("cirunner.test", level, __file__, 1, msg, None, None)


def test_plain_formatter_has_no_escape_codes():
    line = ColoredFormatter(use_color=False).format(_record(logging.ERROR))
    assert "\x1b[" not in line
    assert "| ERROR    | cirunner.test - hello" in line


def test_colored_formatter_wraps_by_level():
    formatter = ColoredFormatter(use_color=True)
    assert formatter.format(_record(logging.WARNING)).startswith("\x1b[33m")
    assert formatter.format(_record(logging.INFO)).endswith("\x1b[0m")


def test_wants_color(monkeypatch):
    class Tty(io.StringIO):
        def isatty(self):
            return True

    monkeypatch.delenv("NO_COLOR", raising=False)
    assert wants_color(Tty())
    assert not wants_color(io.StringIO())
    monkeypatch.setenv("NO_COLOR", "1")
    assert not wants_color(Tty())


def test_setup_writes_dated_file(tmp_path, restore_root_logger):
    log_dir = tmp_path / "logs"
    setup_logging(level=logging.INFO, log_dir=str(log_dir), color=False)
    logging.getLogger("cirunner.test").info("stage finished")
    logging.getLogger("docker.api").info("GET /containers")
    for handler in restore_root_logger.handlers:
        handler.flush()

    with open(log_file_path(str(log_dir)), encoding="utf-8") as f:
        content = f.read()
    assert "cirunner.test:" in content
    assert "stage finished" in content
    assert "GET /containers" not in content
    assert len(restore_root_logger.handlers) == 2


def test_setup_without_log_dir(restore_root_logger):
    setup_logging(level=logging.DEBUG, log_dir=None, color=False)
    assert len(restore_root_logger.handlers) == 1
    assert logging.getLogger("cirunner").level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.WARNING
