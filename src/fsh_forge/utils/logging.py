"""
Logging Utilities

This module provides logging setup for the fsh-forge command line.
"""

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the specified name

    Args:
        name: Logger name (usually module or component name)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    # Configure basic logging if not already configured
    if not logging.getLogger().handlers:
        configure_logging()

    return logger


def configure_logging(level: str = "INFO", format_string: Optional[str] = None) -> None:
    """
    Configure logging for fsh-forge components

    Log records go to stderr so that command output on stdout stays clean. The
    level applies to the handler as well as the root logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string
    """
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    logging.basicConfig(
        level=numeric_level,
        format=format_string or DEFAULT_FORMAT,
        handlers=[handler],
        force=True,
    )
