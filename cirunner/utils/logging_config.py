"""
Logging setup shared by the CLI and the HTTP service.

Console records go to stderr so ``cirunner run`` output can be piped;
colour is used only on a terminal and never when NO_COLOR is set. An
optional per-day file under the log directory keeps full records with
line numbers.
"""
import logging
import sys
import os
from datetime import datetime
from typing import Optional

from cirunner.core.config import LOG_DIR

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"

_LEVEL_COLOURS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31;1m",
}
_RESET = "\x1b[0m"

# Libraries that log every HTTP round trip to the docker daemon
_CHATTY_LOGGERS = ("docker", "urllib3")
_APP_LOGGERS = ("cirunner", "main", "uvicorn", "uvicorn.error", "uvicorn.access")


class ColoredFormatter(logging.Formatter):
    """Console formatter; colours each record by level when ``use_color``."""

    def __init__(self, use_color: bool = True) -> None:
        super().__init__(CONSOLE_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color
        self._by_level = {}
        if use_color:
            self._by_level = {
                level: logging.Formatter(colour + CONSOLE_FORMAT + _RESET, datefmt=DATE_FORMAT)
                for level, colour in _LEVEL_COLOURS.items()
            }

    def format(self, record):
        formatter = self._by_level.get(record.levelno)
        if formatter is None:
            return super().format(record)
        return formatter.format(record)


def wants_color(stream=None) -> bool:
    stream = stream or sys.stderr
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def log_file_path(log_dir: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return os.path.join(log_dir, f"cirunner_{when.strftime('%Y%m%d')}.log")


def setup_logging(level=logging.INFO, log_dir: Optional[str] = LOG_DIR, color: Optional[bool] = None):
    """
    Configure the root logger for a cirunner process.

    Pass ``log_dir=None`` to skip the dated file handler and ``color`` to
    override terminal detection.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_color=wants_color() if color is None else color))
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path(log_dir), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in _APP_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.debug("Logging initialized (console%s).", " + file" if log_dir else "")
