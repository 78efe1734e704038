"""
Logging configuration for crm_dedupe.

The CLI calls ``setup_logging`` once per invocation. Messages go to stderr
(colored on capable terminals) and to a daily file under the configuration
directory, which keeps the full DEBUG trail of HubSpot calls and merges.

Environment:
    CRM_DEDUPE_DEBUG       "1"/"true"/"yes" forces DEBUG
    CRM_DEDUPE_LOG_LEVEL   level name, INFO when unset or unknown
    CRM_DEDUPE_LOG_FILE    explicit log file, or "none"/"disabled"
"""

import copy
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from crm_dedupe.utils.paths import resolve_config_dir

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CRM_DEDUPE_LOG_LEVEL"
ENV_DEBUG = "CRM_DEDUPE_DEBUG"
ENV_LOG_FILE = "CRM_DEDUPE_LOG_FILE"

LOG_FILE_PREFIX = "crm_dedupe_"
ROOT_LOGGER_NAME = "crm_dedupe"


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name on ANSI terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    @staticmethod
    def _supports_color() -> bool:
        if not getattr(sys.stderr, "isatty", None) or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname)
        if not self.use_colors or color is None:
            return super().format(record)

        # The record is shared with the file handler
        colored = copy.copy(record)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def get_log_level_from_env() -> int:
    """Return the level selected by CRM_DEDUPE_DEBUG / CRM_DEDUPE_LOG_LEVEL."""
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level = logging.getLevelName(os.environ.get(ENV_LOG_LEVEL, "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _default_log_dir() -> Path:
    return resolve_config_dir() / "logs"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Return the file the CLI should log to, or None when file logging is off.

    CRM_DEDUPE_LOG_FILE wins over ``log_dir``. Without either, a daily file
    is placed in the ``logs`` directory of the configuration directory.
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    name = f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"
    return (log_dir or _default_log_dir()) / name


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the ``crm_dedupe`` logger hierarchy.

    Calling it again replaces the handlers of the previous call.

    Args:
        level: Console level; taken from the environment when None
        verbose: Force DEBUG and include source locations on the console
        log_dir: Directory for the daily log file
        enable_file_logging: Set False to log to stderr only
        use_colors: Color level names when stderr is a terminal

    Returns:
        The ``crm_dedupe`` logger
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        ColoredFormatter(console_format, DATE_FORMAT, use_colors=use_colors)
    )
    logger.addHandler(console_handler)

    file_path = get_log_file_path(log_dir) if enable_file_logging else None
    if file_path:
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not create log file {file_path}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
            logger.addHandler(file_handler)
            logger.debug(f"Log file: {file_path}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the ``keep_count`` most recent daily log files.

    A ``keep_count`` of 0 disables cleanup.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _default_log_dir()
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
        except OSError:
            logging.getLogger(__name__).debug(f"Could not delete old log {old_log}")
        else:
            deleted += 1
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``crm_dedupe`` hierarchy for ``name``."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


__all__ = [
    "setup_logging",
    "get_logger",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
