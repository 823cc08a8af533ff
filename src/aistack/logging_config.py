"""
Centralized logging configuration for the CLI and the supervisor.

setup_logging configures the root logger with:
- Console output (plain messages in user-friendly mode, technical format otherwise)
- File output to <log_dir>/aistack.log
- Fresh log file on each invocation unless AISTACK_LOG_APPEND is set
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from aistack.config import env_bool

_config_lock = threading.Lock()
_MODULE_LOGGER = logging.getLogger(__name__)
_QUIET_LOGGERS = ("aiohttp", "asyncio", "urllib3")
LOG_FILE_NAME = "aistack.log"

_TECHNICAL_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _detach_handlers(root_logger: logging.Logger) -> None:
    """Remove and close handlers left by a previous setup_logging call."""
    while root_logger.handlers:
        handler = root_logger.handlers[0]
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError as exc:
            _MODULE_LOGGER.debug("Closing %r failed: %s", handler, exc)


def _build_console_handler(user_friendly: bool, level: int) -> logging.Handler:
    if user_friendly:
        formatter = logging.Formatter("%(message)s")
    else:
        formatter = logging.Formatter(_TECHNICAL_FORMAT, _DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    return console_handler


def _configure_file_handler(log_dir: Optional[Path]) -> Optional[logging.Handler]:
    if log_dir is None:
        return None

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _MODULE_LOGGER.warning("Cannot create log directory %s (%s); file logging disabled", log_dir, exc)
        return None

    file_mode = "a" if env_bool("AISTACK_LOG_APPEND", or_value=False) else "w"
    file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, mode=file_mode, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_TECHNICAL_FORMAT, _DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    return file_handler


def setup_logging(
    log_dir: Optional[Path] = None,
    *,
    level: int = logging.INFO,
    user_friendly: bool = True,
) -> None:
    """Configure root logging for one CLI invocation.

    Args:
        log_dir: Directory for aistack.log; file logging is skipped when None
        level: Console level
        user_friendly: Plain ``%(message)s`` console output when True
    """

    with _config_lock:
        root_logger = logging.getLogger()
        _detach_handlers(root_logger)

        root_logger.addHandler(_build_console_handler(user_friendly, level))

        file_handler = _configure_file_handler(log_dir)
        if file_handler:
            root_logger.addHandler(file_handler)

        root_logger.setLevel(logging.DEBUG if file_handler else level)
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
