"""
Logging configuration for the EV service console.

Every process entry point calls ``setup_logging`` once; modules then use
``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "[%(asctime)s] [{component}] %(levelname)s %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def setup_logging(component_name: str = "ev-console", level: str | int = logging.INFO) -> logging.Logger:
    """
    Configure root logging for a console component.

    Args:
        component_name: Tag rendered in every log line (e.g. 'ev-console').
        level: Logging level name or number.
    """
    global _configured
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                LOG_FORMAT.format(component=component_name.upper()),
                datefmt=LOG_DATE_FORMAT,
            )
        )
        root.addHandler(handler)
        _configured = True
    root.setLevel(level)

    logger = logging.getLogger(component_name)
    logger.debug("logging initialized (level=%s)", logging.getLevelName(level))
    return logger
