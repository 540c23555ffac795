"""
Study Engine - Logging
One engine logger with a colored console handler and an optional rotating file.
Modules log through children of it, e.g. get_logger("scheduler") -> study_engine.scheduler.

Environment:
    STUDY_ENGINE_LOG_LEVEL    DEBUG, INFO, WARNING... (default INFO)
    STUDY_ENGINE_LOG_TO_FILE  "1" writes study_engine.log, anything else disables it
    STUDY_ENGINE_LOG_DIR      where the log file lives (default backend/logs)
"""

import logging
import sys
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

ROOT_NAME = "study_engine"
LOG_FILE_NAME = "study_engine.log"
LOG_MAX_BYTES = 2 * 1024 * 1024
LOG_BACKUPS = 3

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
PLAIN_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
CONSOLE_FORMAT = PLAIN_FORMAT + " (%(module)s:%(lineno)d)"


def default_log_dir() -> str:
    return os.getenv("STUDY_ENGINE_LOG_DIR", os.path.join(os.path.dirname(__file__), "logs"))


def level_from_env(default: int = logging.INFO) -> int:
    """Level named by STUDY_ENGINE_LOG_LEVEL; unknown names fall back to the default."""
    name = os.getenv("STUDY_ENGINE_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


# ============================================
# FORMATTERS
# ============================================

class LevelColorFormatter(logging.Formatter):
    """Wraps each console line in the color of its level."""

    COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[34;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(CONSOLE_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        line = super().format(record)
        color = self.COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return line
        return f"{color}{line}{self.RESET}"


def _wants_color(stream) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


# ============================================
# SETUP
# ============================================

def _console_handler(stream) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setFormatter(LevelColorFormatter(use_color=_wants_color(stream)))
    return handler


def _file_handler(log_dir: str) -> logging.Handler:
    os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logger(
    name: str = ROOT_NAME,
    level: Optional[int] = None,
    log_to_file: bool = True,
    log_dir: Optional[str] = None,
    stream=None,
) -> logging.Logger:
    """Configures the named logger once; later calls only adjust the level."""
    logger = logging.getLogger(name)
    logger.setLevel(level if level is not None else level_from_env())

    # Handlers attached here, not inherited ones, decide whether setup already ran
    if logger.handlers:
        return logger

    logger.addHandler(_console_handler(stream or sys.stdout))
    if log_to_file:
        logger.addHandler(_file_handler(log_dir or default_log_dir()))
    return logger


logger = setup_logger(log_to_file=os.getenv("STUDY_ENGINE_LOG_TO_FILE", "1") == "1")


def get_logger(name: str) -> logging.Logger:
    """Child of the engine logger for a module; dotted package prefixes are dropped."""
    return logger.getChild(name.rsplit(".", 1)[-1])
