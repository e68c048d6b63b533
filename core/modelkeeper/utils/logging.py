"""Logging configuration for modelkeeper."""

import logging
import sys

from modelkeeper import config


def setup_logging(level: int | str = config.LOG_LEVEL) -> logging.Logger:
    """
    Configure the package logger.

    Accepts a level number or name; unknown names fall back to INFO.
    HTTP client loggers are held at WARNING or above.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("modelkeeper")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(handler)

    for name in config.NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logger


logger = setup_logging()
