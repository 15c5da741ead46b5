"""
Logging setup for WaveTalk.

All modules log through children of the "wavetalk" logger.
Logs are written to ~/.config/wavetalk/logs/ and, optionally, to stderr.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from wavetalk.config import CONFIG_DIR


ROOT_LOGGER = "wavetalk"
LOG_DIR = CONFIG_DIR / "logs"


def get_log_dir() -> Path:
    """Get the log directory, creating it if needed."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Get a logger in the "wavetalk" hierarchy.

    Args:
        name: Module name, e.g. "wavetalk.pipeline". Names outside the
              hierarchy are nested under it.
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    console: bool = True,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the "wavetalk" root logger. Safe to call more than once.

    Args:
        level: Log level for all handlers
        console: Also log to stderr
        log_file: Rotating log file (defaults to ~/.config/wavetalk/logs/wavetalk.log)
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_file is None:
        log_file = get_log_dir() / "wavetalk.log"
    else:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("[WaveTalk] %(message)s"))
        root_logger.addHandler(console_handler)

    # Keep our records out of the Python root logger
    root_logger.propagate = False

    return root_logger
