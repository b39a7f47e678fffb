"""
Logging Setup
=============
Console (colored when attached to a terminal) plus a daily log file.

Worker threads run one build step each, so every line carries the thread
name. Docker SDK and urllib3 chatter is held at WARNING.
"""
import logging
import sys
import os
from datetime import datetime
from typing import Optional, Union

from isobuild.core.config import LOG_DIR, LOG_LEVEL

LINE_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s - %(message)s"
FILE_LINE_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_ENGINE_LOGGERS = ("isobuild", "main", "run_plan", "uvicorn", "uvicorn.error", "uvicorn.access")
_QUIET_LOGGERS = ("docker", "urllib3")


class ColoredFormatter(logging.Formatter):
    """Wraps each line in the ANSI color of its level."""

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__(LINE_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        line = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return line
        return f"{color}{line}{self.RESET}"


def log_file_path(log_dir: str, when: Optional[datetime] = None) -> str:
    """Daily log file inside ``log_dir``."""
    when = when or datetime.now()
    return os.path.join(log_dir, f"isobuild_{when.strftime('%Y%m%d')}.log")


def setup_logging(level: Union[int, str] = LOG_LEVEL, log_dir: Optional[str] = LOG_DIR) -> None:
    """
    Configure the root logger for the CLI and the API server.

    Console output goes to stderr, keeping stdout free for flat-data output.
    No log file is written when ``log_dir`` is None.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path(log_dir))
        file_handler.setFormatter(logging.Formatter(FILE_LINE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in _ENGINE_LOGGERS:
        engine_logger = logging.getLogger(name)
        engine_logger.setLevel(level)
        engine_logger.propagate = True
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.info(
        "Logging initialized | level=%s | file=%s",
        logging.getLevelName(level), log_file_path(log_dir) if log_dir else "-",
    )
