"""Logging setup for the herald CLI and scheduler daemon."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

_initialized = False

_TIMESTAMPED_FORMAT = "%(asctime)s %(levelname)-5s [%(name)-18s] %(message)s"
_PLAIN_FORMAT = "%(levelname)-5s [%(name)-18s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Transports log every request at INFO; keep them out of sweep logs
_NOISY_LOGGERS = ("httpx", "httpcore")


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    file_path = Path(log_config.file)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    return logging.FileHandler(file_path)


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure the "herald" logger namespace.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: If True, include timestamps in console output

    Per-module levels from ``[logging.levels]`` are applied after the root
    level, so e.g. ``"herald.dispatcher" = "DEBUG"`` works while the rest of
    the engine stays at INFO.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_str = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_str, logging.INFO)

    logger = logging.getLogger("herald")
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        if daemon_mode:
            console_handler.setFormatter(logging.Formatter(_TIMESTAMPED_FORMAT, datefmt=_DATE_FORMAT))
        else:
            console_handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
        logger.addHandler(console_handler)

    if log_config.output in ("file", "both") and log_config.file:
        file_handler = _file_handler(log_config)
        file_handler.setFormatter(logging.Formatter(_TIMESTAMPED_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(file_handler)

    for name, name_level in log_config.levels.items():
        logging.getLogger(name).setLevel(getattr(logging, str(name_level).upper(), level))

    for noisy_logger in _NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Reset logging state for testing purposes."""
    global _initialized
    _initialized = False
    logger = logging.getLogger("herald")
    logger.handlers.clear()
