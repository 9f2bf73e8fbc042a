"""
Logging configuration for Swipe Analysis.

Configures the root logger with dictConfig so ingestion runs, cohort batch
jobs and the API all share one format.

Environment Variables:
    LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO if not set or invalid.
    SWIPE_ANALYSIS_LOG_FILE: Optional path for a rotating log file.

Usage:
    from swipe_analysis.logger_config import setup_logging
    setup_logging()  # Uses LOG_LEVEL env var, defaults to INFO

    # Or override explicitly:
    setup_logging(level=logging.DEBUG, log_file="ingest.log")
"""

import logging
import logging.config
import os
from typing import Dict, Optional, Sequence

# Chatty third-party loggers pinned to WARNING unless we run at DEBUG
NOISY_LOGGERS: Sequence[str] = ("urllib3", "requests", "uvicorn.access")

LOG_FILE_ENV_VAR = "SWIPE_ANALYSIS_LOG_FILE"


def get_log_level() -> int:
    """
    Get log level from LOG_LEVEL environment variable.

    Supports: DEBUG, INFO, WARNING, ERROR, CRITICAL (case-insensitive).
    Defaults to INFO if not set or invalid.

    Returns:
        Logging level constant (e.g., logging.INFO).
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, None)

    if not isinstance(level, int):
        return logging.INFO

    return level


def _third_party_levels(level: int) -> Dict[str, dict]:
    """Build logger overrides that keep library noise down."""
    quiet_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    return {name: {"level": quiet_level} for name in NOISY_LOGGERS}


def setup_logging(
    level: Optional[int] = None,
    format_string: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application using dictConfig.

    Safe to call multiple times; each call replaces the previous handlers.

    Args:
        level: Logging level. If None, reads from LOG_LEVEL env var (default: INFO).
        format_string: Optional custom format string.
        log_file: Optional file path to write logs to (with rotation). If None,
            reads from SWIPE_ANALYSIS_LOG_FILE.
    """
    if level is None:
        level = get_log_level()

    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    if log_file is None:
        log_file = os.getenv(LOG_FILE_ENV_VAR) or None

    config: dict = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": format_string,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": _third_party_levels(level),
        "root": {
            "level": level,
            "handlers": ["console"],
        },
    }

    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "standard",
            "filename": log_file,
            "maxBytes": 10_485_760,  # 10 MB
            "backupCount": 5,
        }
        config["root"]["handlers"].append("file")

    logging.config.dictConfig(config)
