"""
Logging setup for qbt-automate

Console output goes to stdout at the configured level; everything (DEBUG and up)
is written to the log file so troubleshooting never needs a re-run.
"""

import sys
import logging
from typing import Any

LOG_FORMAT_SIMPLE = '%(asctime)s | %(levelname)-8s | %(message)s'
LOG_FORMAT_DETAILED = '%(asctime)s | %(levelname)-8s | %(module)s:%(funcName)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config: Any, trace_mode: bool = False):
    """
    Configure root logger with console and file handlers

    Args:
        config: Config object providing get_log_level() and get_log_file()
        trace_mode: Use detailed format with module/function/line information
    """
    log_format = LOG_FORMAT_DETAILED if trace_mode else LOG_FORMAT_SIMPLE
    formatter = logging.Formatter(log_format, datefmt=DATE_FORMAT)

    level_name = str(config.get_log_level()).upper()
    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Drop handlers from a previous setup (tests, reloads)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file = config.get_log_file()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    except (OSError, PermissionError) as e:
        print(f"WARNING: Failed to setup file logging at {log_file}: {type(e).__name__}: {e}", file=sys.stderr)
        print("WARNING: Continuing with console logging only", file=sys.stderr)

    # Third-party clients are chatty at DEBUG
    logging.getLogger('qbittorrentapi').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger

    Args:
        name: Logger name, usually __name__

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
