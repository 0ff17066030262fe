"""Logging configuration for the talm package."""
import logging
import sys

from talm.config import Config


def setup_logger(name: str, level: int = logging.INFO, stream=None) -> logging.Logger:
    """
    Set up a logger with the specified name and log level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)
        stream: Output stream (default: stderr, so rendered documents on stdout stay clean)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured; the package NullHandler does not count
    streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    if not streams:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setLevel(level)

        formatter = logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
        handler.setFormatter(formatter)

        logger.addHandler(handler)
    else:
        for handler in streams:
            handler.setLevel(level)

    return logger


def setup_logging(debug_mode: bool = False) -> logging.Logger:
    """Configure the package root logger for CLI use."""
    if debug_mode:
        level = logging.DEBUG
    else:
        level = getattr(logging, Config.LOG_LEVEL, logging.WARNING)
    logger = setup_logger("talm", level)
    if Config.DEBUG_TUI:
        logging.getLogger("talm.wizard").setLevel(logging.DEBUG)
    return logger
