"""Logging setup for the recordlock service."""

import logging
import sys

LOGGER_NAME = "recordlock"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach one stream handler to the package logger.

    Calling it again only changes the level, so the app factory and the CLI
    can both call it.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if not any(getattr(h, "_recordlock", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._recordlock = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
